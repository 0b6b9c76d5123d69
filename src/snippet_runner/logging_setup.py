from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def configure_logging(level: str = "INFO") -> None:
    """Route all log records (uvicorn's included) through a Rich handler on stderr.

    Example:
        ```python
        configure_logging("DEBUG")
        ```
    """
    if level.upper() not in LOG_LEVELS:
        raise ValueError(f"log level must be one of: {', '.join(LOG_LEVELS)}")
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
    # httpx logs every Engine API call at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
