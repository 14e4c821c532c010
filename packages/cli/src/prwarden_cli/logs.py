"""Logging setup shared by the CLI commands."""

import logging

from rich.logging import RichHandler


def setup_logging(level: str = "INFO") -> None:
    """Route all module loggers through a single RichHandler on the root logger."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # PyGithub logs every request at DEBUG; keep it out of the review output.
    logging.getLogger("github").setLevel(max(numeric_level, logging.INFO))
