"""pushflow - notification scheduling and multi-channel delivery engine."""

__version__ = "1.0.0"
