from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import default
from sqlalchemy.schema import CreateSchema, CreateTable, DropSchema, DropTable

from ..errors import UnsupportedFeatureError


@dataclass(frozen=True)
class Supports:
    """Capability flags consulted by the query builder and the registry."""

    grouped_limit: bool = False
    schemas: bool = True
    restrict: bool = True


class BaseAdapter:
    """Generic SQL compiler collaborator.

    Turns abstract query descriptors into SQLAlchemy statements; SQLAlchemy
    renders the dialect specific text. The generic adapter has no window
    functions, so per-parent limits are refused.
    """

    name = 'base'
    supports = Supports()
    max_identifier_length = 63

    def dialect(self):
        return default.DefaultDialect()

    def render(self, stmt) -> str:
        return str(stmt.compile(dialect=self.dialect()))

    def table_name_for(self, table_name: str, schema: Optional[str], delimiter: str = '.') -> Tuple[str, Optional[str]]:
        """(name, schema) for ``Table()``; dialects without schemas fold the schema into the name."""
        if schema and not self.supports.schemas:
            return f"{schema}{delimiter}{table_name}", None
        return table_name, schema

    def constraint_action(self, action: Optional[str]) -> Optional[str]:
        return action

    def row_number(self, partition_by, order_by: List[Any]):
        if not self.supports.grouped_limit:
            raise UnsupportedFeatureError(
                f"{self.name} dialect cannot limit rows per parent (no window functions)"
            )
        return func.row_number().over(partition_by=partition_by, order_by=order_by or None)

    # --- statements -----------------------------------------------------------
    def _join(self, left, clause):
        right = clause.target
        for nested in clause.nested:
            right = self._join(right, nested)
        return left.join(right, clause.on, isouter=clause.isouter)

    def compile_select(self, descriptor):
        from_ = descriptor.source
        for clause in descriptor.joins:
            from_ = self._join(from_, clause)
        stmt = select(*descriptor.columns).select_from(from_)
        if descriptor.where:
            stmt = stmt.where(*descriptor.where)
        if descriptor.group_by:
            stmt = stmt.group_by(*descriptor.group_by)
        order_by = list(descriptor.order_by)
        if not order_by and descriptor.offset is not None and self.requires_order_for_offset():
            order_by = list(descriptor.order_fallback)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if descriptor.limit is not None:
            stmt = stmt.limit(descriptor.limit)
        if descriptor.offset is not None:
            stmt = stmt.offset(descriptor.offset)
        return stmt

    def requires_order_for_offset(self) -> bool:
        return False

    def compile_insert(self, table, values: Dict[str, Any]):
        return insert(table).values(**values) if values else insert(table)

    def compile_update(self, table, values: Dict[str, Any], where=None):
        stmt = update(table).values(**values)
        if where is not None:
            stmt = stmt.where(where)
        return stmt

    def compile_delete(self, table, where=None):
        stmt = delete(table)
        if where is not None:
            stmt = stmt.where(where)
        return stmt

    def compile_create_table(self, table):
        return CreateTable(table, if_not_exists=True)

    def compile_drop_table(self, table):
        return DropTable(table, if_exists=True)

    def compile_create_schema(self, name: str):
        if not self.supports.schemas:
            return None
        return CreateSchema(name, if_not_exists=True)

    def compile_drop_schema(self, name: str):
        if not self.supports.schemas:
            return None
        return DropSchema(name, cascade=True, if_exists=True)
