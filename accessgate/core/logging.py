"""
Logging setup. Modules log through logging.getLogger(__name__); this only
configures the root handler once at app creation.
"""
import logging
import sys

from accessgate.config import settings


def configure_logging() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, "_accessgate", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handler._accessgate = True
        root.addHandler(handler)

    logging.getLogger(__name__).info(f"Logging configured with level: {settings.log_level}")
