"""
logging_config.py — Loguru setup for FleetParts

Loguru is the only logging backend. Stdlib records from uvicorn,
SQLAlchemy, alembic and httpx are forwarded into it so every line shares
one format and carries the request id bound by the request middleware.

Business Rules:
- Level and output mode come from Settings (LOG_LEVEL, APP_URL)
- Production (https, non-localhost APP_URL) writes JSON lines for the log shipper
- Development writes colorized lines: time | level | request id | origin | message
- Records logged outside a request carry request_id "-"
- Gateway calls bind extra[gateway]; the dev format shows it after the request id

Called by: fleetparts/main.py (lifespan startup)
Depends on: config.py
"""

import logging
import sys

from loguru import logger

from .config import Settings, settings

# Third-party loggers that are only interesting when something goes wrong
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "slowapi")

DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta>{extra[gateway_tag]} | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def _tag_gateway(record) -> None:
    gateway = record["extra"].get("gateway")
    record["extra"]["gateway_tag"] = f" <{gateway}>" if gateway else ""


def setup_logging(cfg: Settings = settings) -> None:
    """Replace Loguru's default sink and route stdlib logging into it."""
    logger.remove()
    logger.configure(extra={"request_id": "-"}, patcher=_tag_gateway)

    level = cfg.log_level.upper()
    if cfg.is_production:
        logger.add(sys.stdout, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=DEV_FORMAT, colorize=True)

    logging.basicConfig(handlers=[StdlibForwarder()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging ready (level={}, json={})", level, cfg.is_production)


class StdlibForwarder(logging.Handler):
    """Hand stdlib records to Loguru, attributed to the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())
