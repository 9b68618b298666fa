"""Queue-driven job worker with a periodic job scheduler."""

__version__ = "0.1.0"
