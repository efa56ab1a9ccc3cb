from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@dataclass(frozen=True)
class RegistryConfig:
    """Immutable per-registry options.

    Attributes:
        omit_null: Skip ``None`` values on insert/update and make
            ``set(None)`` on an association a no-op instead of a clear.
        underscored: Default column naming for newly defined models
            (``userId`` attribute -> ``user_id`` column) and snake_case table names.
        emulate_grouped_limit: When the dialect has no window functions, run one
            query per parent key instead of failing on per-parent limits.
        schema_delimiter: Joins schema and table name on dialects without schemas.
    """

    omit_null: bool = False
    underscored: bool = False
    emulate_grouped_limit: bool = False
    schema_delimiter: str = '.'

    def with_overrides(self, **overrides: Any) -> "RegistryConfig":
        data = {k: v for k, v in overrides.items() if v is not None}
        if not data:
            return self
        return replace(self, **data)


def _as_bool(raw: Optional[str]) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in ('1', 'true', 'yes', 'y', 'on')


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    echo: bool = False

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        """Read BERRYORM_DATABASE_URL / BERRYORM_ECHO, loading a .env file first."""
        if dotenv:
            load_dotenv()
        return cls(
            database_url=os.getenv('BERRYORM_DATABASE_URL') or DEFAULT_DATABASE_URL,
            echo=_as_bool(os.getenv('BERRYORM_ECHO')),
        )
