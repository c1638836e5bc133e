from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.types import Processor

from core.config import LoggingCfg

def _shared_processors(*, stdlib_extra: bool = False) -> list[Processor]:
    """Processors common to structlog and foreign (stdlib) records."""
    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if stdlib_extra:
        processors.append(structlog.stdlib.ExtraAdder())
    processors += [structlog.processors.StackInfoRenderer(), structlog.processors.format_exc_info]
    return processors


def _build_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        *_shared_processors(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]


def setup_logging(cfg: LoggingCfg) -> structlog.stdlib.BoundLogger:
    """Configure structlog and the stdlib root logger.

    With ``log_dir`` set, records go to ``log_dir/app.ndjson``; otherwise to
    stderr. ``format`` picks JSON or console rendering. Records emitted via
    stdlib ``logging`` with ``extra=`` keep their extra fields.
    """

    handler: logging.Handler
    if cfg.log_dir is not None:
        log_path = Path(cfg.log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path / "app.ndjson", encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    renderer: Processor
    if cfg.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_shared_processors(stdlib_extra=True),
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(cfg.level.upper())
    root_logger.addHandler(handler)

    structlog.configure(
        processors=_build_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.get_logger("tallyd")

