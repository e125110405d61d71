"""Profiling metadata keys and metastore, configuration loading and reloading, query validation, and debug-info tracking."""

__version__ = "0.1.0"