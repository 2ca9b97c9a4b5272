"""
DP Persistence module.

This module contains the database implementation for submission storage.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on dp_common for domain models and interfaces,
and is used by the controller, the build worker and the admin CLI.
"""

from .sqlite_repository import SQLiteSubmissionRepository

__all__ = ["SQLiteSubmissionRepository"]
