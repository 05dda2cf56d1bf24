"""Disposable provider accounts and durable tracking of remote image jobs."""

__version__ = "0.1.0"
