from __future__ import annotations

from typing import Optional

from sqlalchemy.dialects import mssql as _mssql
from sqlalchemy.schema import CreateSchema, DropSchema

from .base import BaseAdapter, Supports


class MSSQLAdapter(BaseAdapter):
    name = 'mssql'
    supports = Supports(grouped_limit=True, schemas=True, restrict=False)
    max_identifier_length = 128

    def dialect(self):
        return _mssql.dialect()

    def constraint_action(self, action: Optional[str]) -> Optional[str]:
        # SQL Server has no RESTRICT; NO ACTION rejects the statement the same way
        if action == 'RESTRICT':
            return 'NO ACTION'
        return action

    def requires_order_for_offset(self) -> bool:
        # OFFSET ... FETCH is only valid after an ORDER BY
        return True

    def compile_create_schema(self, name: str):
        # CREATE SCHEMA has no IF NOT EXISTS form on SQL Server
        return CreateSchema(name)

    def compile_drop_schema(self, name: str):
        return DropSchema(name)
