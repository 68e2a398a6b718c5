import logging
from logging.config import dictConfig

from .config import Settings


def configure_logging(settings: Settings) -> None:
    # Use DEBUG level when DEBUG=True, otherwise use configured LOG_LEVEL
    if settings.DEBUG and settings.LOG_LEVEL.upper() == "INFO":
        level = logging.DEBUG
    else:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "()": "logging.Formatter",
                    "format": "%(asctime)s %(levelname)s [%(name)s] [tenant=%(tenant_id)s op=%(operation_id)s] %(message)s",
                }
            },
            "filters": {
                "log_context": {
                    "()": "commerce_api.common.context.LogContextFilter",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["log_context"],
                    "level": level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": level,
            },
            "loggers": {
                # Keep third-party libraries at WARNING
                "sqlalchemy": {
                    "level": logging.WARNING,
                },
                "sqlalchemy.engine": {
                    "level": logging.WARNING,
                },
                "aiosqlite": {
                    "level": logging.WARNING,
                },
                "httpx": {
                    "level": logging.WARNING,
                },
                "httpcore": {
                    "level": logging.WARNING,
                },
                "stripe": {
                    "level": logging.WARNING,
                },
            },
        }
    )
