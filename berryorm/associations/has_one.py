from __future__ import annotations

from typing import Any, Optional

from ..instance import Instance
from .base import and_all
from .has_many import HasMany


class HasOne(HasMany):
    """One-to-one with the foreign key on the target (``user.has_one(Profile)``)."""

    kind = 'has_one'
    multiple = False

    async def set(self, instance: Instance, target: Any, *, omit_null: Optional[bool] = None, transaction=None, logging=None) -> None:
        """Point ``target`` at ``instance``, detaching the previously associated one."""
        if self._omit(target, omit_null):
            return
        src = self._require_source(instance)
        key = self.target_value(target) if target is not None else None
        fk_col = self._fk_column(self.target.table)
        async with self.database.ensure_transaction(transaction) as tx:
            stale = fk_col == src
            if key is not None:
                stale = and_all(stale, ~self._pk_in([key]))
            await self._assign({self.foreign_key: None}, stale, tx, logging)
            if target is None:
                return
            values = {self.foreign_key: src, **self._scope_values()}
            if isinstance(target, Instance) and target.is_new_record:
                target.set(values)
                await target.save(transaction=tx, logging=logging)
                return
            await self._assign(values, self._pk_in([key]), tx, logging)
            self._mark([target], values)
