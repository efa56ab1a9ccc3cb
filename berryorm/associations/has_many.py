from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..core.naming import underscore
from ..core.utils import as_list
from ..instance import Instance
from ..sql.builders import JoinClause, LinkParts
from .base import Association, and_all


class HasMany(Association):
    """One-to-many: the foreign key lives on the target.

    ``user.has_many(Task)`` adds ``Task.user_id`` (unless ``foreign_key`` names
    another attribute) referencing ``User.<source_key>``.
    """

    kind = 'has_many'
    multiple = True

    def __init__(self, source, target, *, foreign_key: Any = None, source_key: Optional[str] = None, **options: Any):
        super().__init__(source, target, **options)
        self.source_key = self._target_key(source_key, source, 'source_key')
        default_fk = f"{underscore(source.name)}_{self.source_key}"
        self.foreign_key = self._declare_foreign_key(target, default_fk, foreign_key, source, self.source_key)

    @property
    def source_attribute(self) -> str:
        return self.source_key

    def _fk_column(self, table):
        return table.c[self.target.field(self.foreign_key)]

    def join_clauses(self, parent, target, path: str, *, extra=None, isouter: bool = True, through=None):
        on = self._fk_column(target) == parent.c[self.source.field(self.source_key)]
        return [JoinClause(path, target, and_all(on, self._scope_on(target), extra), isouter=isouter)]

    def link_parts(self, table, keys: List[Any], through_alias_name: str):
        col = self._fk_column(table)
        return LinkParts(where=and_all(col.in_(keys), self._scope_on(table)), parent_key=col)

    # ----- mutations -----
    async def _assign(self, values: Dict[str, Any], where, transaction, logging) -> int:
        target = self.target
        data = {target.field(k): v for k, v in values.items()}
        stmt = self.registry.adapter.compile_update(target.table, data, where)
        result = await self.database.execute(stmt, transaction=transaction, logging=logging)
        return result.rowcount

    def _pk_in(self, keys: List[Any]):
        target = self.target
        return target.table.c[target.field(target.primary_key)].in_(keys)

    @staticmethod
    def _mark(items: List[Any], values: Dict[str, Any]) -> None:
        for item in items:
            if isinstance(item, Instance):
                item._values.update(values)
                item._previous.update(values)

    async def set(self, instance: Instance, targets: Any, *, omit_null: Optional[bool] = None, transaction=None, logging=None) -> None:
        """Replace the associated targets: others are detached (foreign key set to NULL)."""
        if self._omit(targets, omit_null):
            return
        src = self._require_source(instance)
        items = as_list(targets)
        keys = self._target_keys(items)
        fk_col = self._fk_column(self.target.table)
        async with self.database.ensure_transaction(transaction) as tx:
            stale = fk_col == src
            if keys:
                stale = and_all(stale, ~self._pk_in(keys))
            await self._assign({self.foreign_key: None}, and_all(stale, self._scope_on(self.target.table)), tx, logging)
            if keys:
                values = {self.foreign_key: src, **self._scope_values()}
                await self._assign(values, self._pk_in(keys), tx, logging)
                self._mark(items, values)

    async def add(self, instance: Instance, targets: Any, *, transaction=None, logging=None) -> None:
        self._require_multiple('add')
        src = self._require_source(instance)
        items = as_list(targets)
        keys = self._target_keys(items)
        if not keys:
            return
        values = {self.foreign_key: src, **self._scope_values()}
        await self._assign(values, self._pk_in(keys), transaction, logging)
        self._mark(items, values)

    async def remove(self, instance: Instance, targets: Any, *, transaction=None, logging=None) -> None:
        self._require_multiple('remove')
        src = self._require_source(instance)
        items = as_list(targets)
        keys = self._target_keys(items)
        if not keys:
            return
        where = and_all(self._fk_column(self.target.table) == src, self._pk_in(keys))
        await self._assign({self.foreign_key: None}, where, transaction, logging)
        self._mark(items, {self.foreign_key: None})

    async def create(
        self,
        instance: Instance,
        values: Optional[Dict[str, Any]] = None,
        *,
        fields: Optional[List[str]] = None,
        include: Any = None,
        transaction=None,
        logging=None,
    ) -> Instance:
        """Create a target already pointing at ``instance``."""
        src = self._require_source(instance)
        data = dict(values or {})
        data.update(self._scope_values())
        data[self.foreign_key] = src
        if fields is not None:
            fields = list(fields) + [k for k in self._scope_values() if k not in fields]
            if self.foreign_key not in fields:
                fields.append(self.foreign_key)
        return await self.target.create(data, fields=fields, include=include, transaction=transaction, logging=logging)

    async def save_nested(self, instance: Instance, child: Instance, node, *, transaction=None, logging=None) -> None:
        child.set(self._scope_values())
        child.set(self.foreign_key, self._require_source(instance))
        await child.save(include=[c.to_include() for c in node.children] or None, transaction=transaction, logging=logging)
