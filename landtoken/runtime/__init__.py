from .logging import LOGGER_NAME, JsonFormatter, setup_logger
from .settings import AppSettings

__all__ = ["AppSettings", "JsonFormatter", "LOGGER_NAME", "setup_logger"]
