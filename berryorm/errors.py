"""Exception taxonomy for berryorm.

Configuration problems are raised while models and associations are being
declared. Query building problems are raised before any SQL runs. Driver
failures are translated once, in :mod:`berryorm.database`, and keep the
underlying driver error reachable as ``original`` and ``__cause__``.
"""
from __future__ import annotations

from typing import Any, Optional


class BerryORMError(Exception):
    """Base class for every error raised by berryorm."""


class ConfigurationError(BerryORMError):
    pass


class AssociationConfigurationError(ConfigurationError):
    """Bad association declaration: alias or foreign key collision, naming clash."""


class EagerLoadingError(BerryORMError):
    """An include refers to an association the parent model does not declare."""


class UnsupportedFeatureError(BerryORMError):
    """The target dialect cannot express the requested option combination."""


class QueryError(BerryORMError, ValueError):
    """Malformed query options (unknown column, operator or order form)."""


class TransactionError(BerryORMError):
    pass


class DatabaseError(BerryORMError):
    """Driver level failure.

    Attributes:
        original: The exception raised by SQLAlchemy / the DB-API driver.
        sql: Rendered statement text when available.
    """

    def __init__(self, message: str, original: Any = None, sql: Optional[str] = None):
        super().__init__(message)
        self.original = original
        self.sql = sql

    @property
    def parent(self) -> Any:
        return self.original


class ConstraintError(DatabaseError):
    pass


class ForeignKeyConstraintError(ConstraintError):
    pass


class UniqueConstraintError(ConstraintError):
    pass


__all__ = [
    'BerryORMError',
    'ConfigurationError',
    'AssociationConfigurationError',
    'EagerLoadingError',
    'UnsupportedFeatureError',
    'QueryError',
    'TransactionError',
    'DatabaseError',
    'ConstraintError',
    'ForeignKeyConstraintError',
    'UniqueConstraintError',
]
