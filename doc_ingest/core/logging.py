"""
Logging setup shared by workers and scripts.

All modules log through `logging.getLogger(__name__)` with %-style
"Event | key=value" messages; this only wires the root handler.
"""

from __future__ import annotations

import logging

from doc_ingest.core.config import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("botocore", "aiobotocore", "httpx", "openai", "sqlalchemy.engine")


def configure_logging(cfg: Settings | None = None, *, force: bool = False) -> None:
    cfg = cfg or default_settings
    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.log_level.upper(), logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT, force=force)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if cfg.db_echo_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)
