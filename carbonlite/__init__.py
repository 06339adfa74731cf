"""In-memory Graphite metric cache, carbonlink listener, cache query API and configuration loader."""

__version__ = "0.1.0"