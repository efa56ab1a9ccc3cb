from __future__ import annotations

import sqlite3

from sqlalchemy.dialects import sqlite as _sqlite

from .base import BaseAdapter, Supports

# Window functions (ROW_NUMBER() OVER) arrived in SQLite 3.25
_HAS_WINDOW = sqlite3.sqlite_version_info >= (3, 25, 0)


class SQLiteAdapter(BaseAdapter):
    name = 'sqlite'
    # SQLite has no schemas; a model schema is folded into the table name
    supports = Supports(grouped_limit=_HAS_WINDOW, schemas=False, restrict=True)
    max_identifier_length = 1024

    def dialect(self):
        return _sqlite.dialect()
