from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..instance import Instance
from ..sql.builders import JoinClause, LinkParts
from .base import Association, and_all, foreign_key_spec, naming_collision


class BelongsTo(Association):
    """Many-to-one: the foreign key lives on the source.

    ``Task.belongs_to(User)`` adds ``Task.user_id`` referencing
    ``User.<target_key>``. The foreign key name defaults to
    ``<alias>_<target_key>``, so ``alias='owner'`` yields ``owner_id``.
    """

    kind = 'belongs_to'
    multiple = False

    def __init__(self, source, target, *, foreign_key: Any = None, target_key: Optional[str] = None, **options: Any):
        super().__init__(source, target, **options)
        self.target_key = self._target_key(target_key, target, 'target_key')
        default_fk = f"{self.alias}_{self.target_key}"
        name, _ = foreign_key_spec(foreign_key, default_fk)
        if name == self.alias:
            raise naming_collision(name, source.name)
        self.foreign_key = self._declare_foreign_key(source, default_fk, foreign_key, target, self.target_key)

    @property
    def source_attribute(self) -> str:
        return self.foreign_key

    @property
    def target_key_attribute(self) -> str:
        return self.target_key

    def join_clauses(self, parent, target, path: str, *, extra=None, isouter: bool = True, through=None):
        on = target.c[self.target.field(self.target_key)] == parent.c[self.source.field(self.foreign_key)]
        return [JoinClause(path, target, and_all(on, self._scope_on(target), extra), isouter=isouter)]

    def link_parts(self, table, keys: List[Any], through_alias_name: str):
        col = table.c[self.target.field(self.target_key)]
        return LinkParts(where=and_all(col.in_(keys), self._scope_on(table)), parent_key=col)

    async def set(
        self,
        instance: Instance,
        target: Any,
        *,
        save: bool = True,
        omit_null: Optional[bool] = None,
        transaction=None,
        logging=None,
    ) -> None:
        """Point ``instance`` at ``target`` (an instance, a key value or ``None``)."""
        if self._omit(target, omit_null):
            return
        value = self.target_value(target) if target is not None else None
        instance.set(self.foreign_key, value)
        if isinstance(target, Instance):
            instance._included[self.alias] = target
        elif target is None:
            instance._included[self.alias] = None
        else:
            instance._included.pop(self.alias, None)
        if save:
            await instance.save(fields=[self.foreign_key], transaction=transaction, logging=logging)

    async def create(
        self,
        instance: Instance,
        values: Optional[Dict[str, Any]] = None,
        *,
        fields: Optional[List[str]] = None,
        transaction=None,
        logging=None,
    ) -> Instance:
        """Create the target and point ``instance`` at it, in one transaction."""
        async with self.database.ensure_transaction(transaction) as tx:
            target = await self.target.create(values, fields=fields, transaction=tx, logging=logging)
            await self.set(instance, target, transaction=tx, logging=logging)
        return target
