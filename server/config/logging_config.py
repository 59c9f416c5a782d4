"""
Logging Configuration for the Deep Search Server
Console, rotating file and error-file logging with optional JSON output
"""

import logging
import logging.config
import sys
from pathlib import Path

from .settings import get_settings

settings = get_settings()


def setup_logging():
    """
    Set up logging for the deep search server.
    Pipeline modules log under the "deepsearch" namespace.
    """

    # Ensure log directory exists
    log_path = Path(settings.log_path)
    log_path.mkdir(parents=True, exist_ok=True)

    # Define log file paths
    main_log_file = log_path / "deepsearch_server.log"
    error_log_file = log_path / "errors.log"

    file_formatter = "json" if settings.structured_logging else "detailed"

    # Logging configuration
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": file_formatter,
                "filename": str(main_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": file_formatter,
                "filename": str(error_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 10,
                "encoding": "utf8"
            }
        },
        "loggers": {
            "": {  # Root logger
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "deepsearch": {
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "deepsearch_server": {
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console", "file"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["file"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING" if not settings.debug else "INFO",
                "handlers": ["file"],
                "propagate": False
            }
        }
    }

    # Apply configuration
    logging.config.dictConfig(logging_config)

    # Log startup information
    logger = logging.getLogger("deepsearch_server")
    logger.info("Logging system initialized")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Log directory: {settings.log_path}")
    logger.info(f"Structured logging: {'enabled' if settings.structured_logging else 'disabled'}")
