# roomsync/core/logging.py
import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Install a single stream handler on the root logger.

    Calling this more than once only adjusts the level, so application
    factories used in tests do not stack duplicate handlers.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    if any(getattr(h, "_roomsync", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._roomsync = True  # type: ignore[attr-defined]
    root.addHandler(handler)
