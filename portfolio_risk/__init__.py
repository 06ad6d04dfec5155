"""Risk analytics computation and caching for portfolio holdings."""

__version__ = "1.0.0"
