import logging
from typing import Optional, Union


def log_level(name: Optional[Union[str, int]], default: int = logging.INFO) -> int:
    """Translate a configured level name such as ``"debug"`` into a logging constant."""
    if isinstance(name, int):
        return name
    if not name:
        return default
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def setup_logging(level: int = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
