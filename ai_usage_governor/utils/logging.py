"""
Logging configuration utilities
"""
import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging"""

    simple_formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    # The HTTP stack is chatty at INFO
    for logger_name in ("openai", "httpx", "httpcore"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("ai_usage_governor").setLevel(getattr(logging, level.upper()))
