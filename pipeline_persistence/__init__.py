"""
Pipeline Persistence module.

This module contains the database implementation of run history.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on pipeline_common for domain models and
interfaces, and is used by both the engine (as its result sink) and the
admin CLI.
"""

from .sqlite_repository import SQLiteRunRepository

__all__ = ["SQLiteRunRepository"]
