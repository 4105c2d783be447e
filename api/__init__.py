"""Local HTTP control surface for the backup console."""

__version__ = "1.0.0"
