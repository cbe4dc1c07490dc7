"""Last-mile delivery coordination backend."""

__version__ = "1.0.0"
