"""Logging setup for the QuestionFlow service."""
import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``questionflow`` logger tree once and return its root."""
    root = logging.getLogger("questionflow")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root
