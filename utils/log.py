# utils/log.py
"""
Structured JSON logging for the delivery backend.

Every module logs through a child of the "nft_delivery" logger so a single
call to setup_logging() configures the whole service.
"""
import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

ROOT_LOGGER = "nft_delivery"

LOG_LEVELS = {
     "DEBUG": logging.DEBUG,
     "INFO": logging.INFO,
     "WARNING": logging.WARNING,
     "ERROR": logging.ERROR,
     "CRITICAL": logging.CRITICAL,
}


class DeliveryJsonFormatter(jsonlogger.JsonFormatter):
     """Adds timestamp, level, logger and call-site fields to each record."""

     def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
          super().add_fields(log_record, record, message_dict)
          if not log_record.get("timestamp"):
               log_record["timestamp"] = self.formatTime(record, self.datefmt)
          log_record["level"] = record.levelname
          log_record["logger"] = record.name
          log_record["module"] = record.module
          log_record["function"] = record.funcName


def setup_logging(level: Optional[str] = None, format_type: str = "json") -> logging.Logger:
     """
     Configure the service logger.

     Args:
          level: DEBUG, INFO, WARNING, ERROR or CRITICAL (defaults to INFO)
          format_type: "json" for structured output, anything else for plain text

     Returns:
          The configured root service logger
     """
     log_level = LOG_LEVELS.get((level or "INFO").upper(), logging.INFO)

     logger = logging.getLogger(ROOT_LOGGER)
     logger.setLevel(log_level)
     logger.handlers.clear()

     handler = logging.StreamHandler(sys.stdout)
     handler.setLevel(log_level)
     if format_type == "json":
          formatter = DeliveryJsonFormatter(
               fmt="%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s",
               datefmt="%Y-%m-%dT%H:%M:%S",
          )
     else:
          formatter = logging.Formatter(
               fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s - %(message)s",
               datefmt="%Y-%m-%d %H:%M:%S",
          )
     handler.setFormatter(formatter)
     logger.addHandler(handler)
     logger.propagate = False
     return logger


def get_logger(name: str) -> logging.Logger:
     """Return a child of the service logger, e.g. get_logger("pipeline")."""
     return logging.getLogger(f"{ROOT_LOGGER}.{name}")
