"""msgbridge - single-session messaging gateway daemon."""

__version__ = "0.1.0"
