# core/log_config.py
import logging
import logging.config

from notipay.core.config import settings


def build_logging_config(environment: str) -> dict:
    level = "INFO" if environment == "production" else "DEBUG"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": level},
            "uvicorn.error": {"handlers": ["console"], "level": level},
            "uvicorn.access": {"handlers": ["console"], "level": level},
            "celery": {"handlers": ["console"], "level": level},
            "notipay": {"handlers": ["console"], "level": level, "propagate": False},
        },
    }


def configure_logging(environment: str = None):
    logging.config.dictConfig(build_logging_config(environment or settings.ENVIRONMENT))
