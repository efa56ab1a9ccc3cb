from __future__ import annotations

from sqlalchemy.dialects import postgresql as _pg

from .base import BaseAdapter, Supports


class PostgresAdapter(BaseAdapter):
    name = 'postgres'
    supports = Supports(grouped_limit=True, schemas=True, restrict=True)
    # NAMEDATALEN - 1; longer labels are silently truncated by the server
    max_identifier_length = 63

    def dialect(self):
        return _pg.dialect()
