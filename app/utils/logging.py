import logging
import sys
import os
from pathlib import Path
from loguru import logger
import json
from datetime import date

from app.utils.context import get_request_id

DEFAULT_REQUEST_ID = "app"


def _inject_request_id(record):
    """Tag records from module-level loggers with the request or task id in scope."""
    if record["extra"].get("request_id", DEFAULT_REQUEST_ID) == DEFAULT_REQUEST_ID:
        record["extra"]["request_id"] = get_request_id() or DEFAULT_REQUEST_ID


class InterceptHandler(logging.Handler):
    loglevel_mapping = {
        50: "CRITICAL",
        40: "ERROR",
        30: "WARNING",
        20: "INFO",
        10: "DEBUG",
        0: "NOTSET",
    }

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except (AttributeError, ValueError):
            level = self.loglevel_mapping.get(record.levelno, "INFO")

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class CustomizeLogger:
    @classmethod
    def make_logger(cls, config_path: Path, environment: str = "logger"):
        config = cls.load_logging_config(config_path)
        logging_config = config.get(environment, config.get("logger"))

        return cls.customize_logging(
            log_dir=logging_config.get("log_dir"),
            filename=f"{date.today().strftime('%Y-%m-%d')}-{logging_config.get('filename')}",
            level=logging_config.get("level"),
            rotation=logging_config.get("rotation"),
            retention=logging_config.get("retention"),
            console_format=logging_config.get("console_format"),
            file_format=logging_config.get("file_format"),
            use_json_logs=logging_config.get("use_json_logs", False),
            file_enabled=logging_config.get("file_enabled", True),
        )

    @classmethod
    def customize_logging(
        cls,
        log_dir: str,
        filename: str,
        level: str,
        rotation: str,
        retention: str,
        console_format: str,
        file_format: str,
        use_json_logs: bool = False,
        file_enabled: bool = True,
    ):
        logger.remove()
        logger.configure(extra={"request_id": DEFAULT_REQUEST_ID}, patcher=_inject_request_id)

        # Console logger with colors
        logger.add(
            sys.stdout,
            enqueue=True,
            backtrace=True,
            level=level.upper(),
            format=console_format,
            colorize=True,
        )

        if file_enabled:
            # File logger without colors
            file_options = dict(
                rotation=rotation,
                retention=retention,
                enqueue=True,
                backtrace=True,
                level=level.upper(),
                colorize=False,
            )
            if use_json_logs and file_format == "json":
                logger.add(f"{log_dir}/{filename}", serialize=True, **file_options)
            else:
                logger.add(f"{log_dir}/{filename}", format=file_format, **file_options)

        # Redirect standard logging to loguru
        cls._setup_intercept_handlers()

        return logger

    @staticmethod
    def _setup_intercept_handlers():
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

        framework_loggers = [
            "uvicorn",
            "uvicorn.error",
            "uvicorn.access",
            "fastapi",
            "celery",
            "celery.task",
            "sqlalchemy.engine",
        ]
        for log_name in framework_loggers:
            _logger = logging.getLogger(log_name)
            _logger.handlers = [InterceptHandler()]
            _logger.propagate = False

    @staticmethod
    def load_logging_config(config_path: Path):
        with open(config_path) as config_file:
            return json.load(config_file)


# Initialize logger
config_path = Path(__file__).resolve().parents[2] / "logging_config.json"
environment = {
    "production": "production",
    "test": "test",
}.get(os.getenv("ENVIRONMENT", "development"), "logger")
custom_logger = CustomizeLogger.make_logger(config_path, environment)


def get_logger():
    """
    Get the shared loguru logger.

    Records pick up the request id in scope when they are emitted, so a
    logger created at import time still tags each request correctly. Use
    ``get_logger().bind(request_id=...)`` to pin an id explicitly.
    """
    return custom_logger
