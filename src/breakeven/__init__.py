"""Break Even - split bills with friends and settle up over time."""

__version__ = "0.1.0"
