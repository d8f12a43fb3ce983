"""Billing core services."""

from meterbill.services.db import build_engine, build_session_factory, get_db, get_session_factory

__all__ = [
    "build_engine",
    "build_session_factory",
    "get_db",
    "get_session_factory",
]
