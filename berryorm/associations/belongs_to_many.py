from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..core.filters import scope_where
from ..core.naming import underscore
from ..core.utils import as_list
from ..errors import AssociationConfigurationError
from ..instance import Instance
from ..sql.builders import JoinClause, LinkParts
from .base import Association, and_all, foreign_key_spec

logger = logging.getLogger(__name__)


class BelongsToMany(Association):
    """Many-to-many through a junction model.

    The junction is ``through`` (a model or a model name) or, when omitted, a
    model named after both sides (``TaskUser``) defined on first use. It
    carries ``foreign_key`` (pointing at the source) and ``other_key``
    (pointing at the target), both non-null with a unique constraint over the
    pair. Both sides of a many-to-many share the same junction and keys.

    Example:
        User.belongs_to_many(Task, through='UserTasks')
        Task.belongs_to_many(User, through='UserTasks')
    """

    kind = 'belongs_to_many'
    multiple = True

    def __init__(
        self,
        source,
        target,
        *,
        through: Any = None,
        through_scope: Optional[Dict[str, Any]] = None,
        foreign_key: Any = None,
        other_key: Any = None,
        source_key: Optional[str] = None,
        target_key: Optional[str] = None,
        **options: Any,
    ):
        super().__init__(source, target, **options)
        self.source_key = self._target_key(source_key, source, 'source_key')
        self.target_key = self._target_key(target_key, target, 'target_key')
        default_fk = f"{underscore(source.name)}_{self.source_key}"
        default_ok = f"{underscore(target.name)}_{self.target_key}"
        fk_name, _ = foreign_key_spec(foreign_key, default_fk)
        ok_name, _ = foreign_key_spec(other_key, default_ok)
        if fk_name == ok_name:
            raise AssociationConfigurationError(
                f"foreign_key and other_key of '{self.alias}' on {source.name} are both '{fk_name}'"
            )
        self.through = self._junction(through)
        self.through_scope: Dict[str, Any] = dict(through_scope or {})
        self.foreign_key = self._declare_foreign_key(
            self.through, default_fk, foreign_key, source, self.source_key, allow_null=False,
        )
        self.other_key = self._declare_foreign_key(
            self.through, default_ok, other_key, target, self.target_key, allow_null=False,
        )
        for name in self.through_scope:
            if name not in self.through.attributes:
                raise AssociationConfigurationError(f"through_scope refers to unknown attribute {self.through.name}.{name}")
        self.through.add_unique_set((self.foreign_key, self.other_key))

    def _junction(self, through: Any):
        registry = self.registry
        if getattr(through, 'is_model', False):
            return through
        name = str(through) if through else ''.join(sorted([self.source.name, self.target.name]))
        if name in registry.models:
            return registry.models[name]
        logger.debug("Defining junction model %s for %s.%s", name, self.source.name, self.alias)
        return registry.define(name, {}, table_name=name)

    @property
    def source_attribute(self) -> str:
        return self.source_key

    @property
    def target_key_attribute(self) -> str:
        return self.target_key

    def _col(self, table, model, name: str):
        return table.c[model.field(name)]

    def join_clauses(self, parent, target, path: str, *, extra=None, isouter: bool = True, through=None):
        junction = through if through is not None else self.through.table.alias()
        on_junction = and_all(
            self._col(junction, self.through, self.foreign_key) == self._col(parent, self.source, self.source_key),
            scope_where(self.through, junction, self.through_scope),
        )
        on_target = and_all(
            self._col(target, self.target, self.target_key) == self._col(junction, self.through, self.other_key),
            self._scope_on(target),
            extra,
        )
        # Target is joined inside the junction group
        nested = JoinClause(path, target, on_target, isouter=False)
        return [JoinClause(f"{path}->through", junction, on_junction, isouter=isouter, nested=[nested])]

    def link_parts(self, table, keys: List[Any], through_alias_name: str):
        junction = self.through.table.alias(through_alias_name)
        parent_key = self._col(junction, self.through, self.foreign_key)
        on = and_all(
            self._col(table, self.target, self.target_key) == self._col(junction, self.through, self.other_key),
            scope_where(self.through, junction, self.through_scope),
        )
        return LinkParts(
            where=and_all(parent_key.in_(keys), self._scope_on(table)),
            parent_key=parent_key,
            joins=[JoinClause(through_alias_name, junction, on, isouter=False)],
            through_model=self.through,
            through_table=junction,
        )

    # ----- junction rows -----
    def _through_values(self) -> Dict[str, Any]:
        return {k: v for k, v in self.through_scope.items() if not isinstance(v, (dict, list, tuple))}

    def _pair_where(self, src: Any, keys: List[Any]):
        table = self.through.table
        return and_all(
            self._col(table, self.through, self.foreign_key) == src,
            self._col(table, self.through, self.other_key).in_(keys),
        )

    async def _current(self, src: Any, keys: Optional[List[Any]], transaction, logging) -> Dict[Any, Instance]:
        where: Dict[str, Any] = {self.foreign_key: src, **self.through_scope}
        if keys is not None:
            where[self.other_key] = {'in': keys}
        rows = await self.through.find_all(where=where, transaction=transaction, logging=logging)
        return {row.get(self.other_key): row for row in rows}

    async def _link(self, src: Any, key: Any, values: Dict[str, Any], transaction, logging) -> None:
        data = {**values, **self._through_values(), self.foreign_key: src, self.other_key: key}
        await self.through.create(data, transaction=transaction, logging=logging)

    async def _relink(self, row: Instance, values: Dict[str, Any], transaction, logging) -> None:
        row.set({k: v for k, v in values.items() if k in self.through.attributes})
        if row.changed():
            await row.save(transaction=transaction, logging=logging)

    async def _unlink(self, src: Any, keys: List[Any], transaction, logging) -> None:
        stmt = self.registry.adapter.compile_delete(self.through.table, self._pair_where(src, keys))
        await self.database.execute(stmt, transaction=transaction, logging=logging)

    def _values_for(self, item: Any, through: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        values = dict(through or {})
        if isinstance(item, Instance):
            values.update(item._through_values)
        return values

    # ----- mutations -----
    async def set(
        self,
        instance: Instance,
        targets: Any,
        *,
        through: Optional[Dict[str, Any]] = None,
        omit_null: Optional[bool] = None,
        transaction=None,
        logging=None,
    ) -> None:
        """Replace the associated targets: junction rows of the others are deleted."""
        if self._omit(targets, omit_null):
            return
        src = self._require_source(instance)
        items = as_list(targets)
        keys = self._target_keys(items)
        async with self.database.ensure_transaction(transaction) as tx:
            current = await self._current(src, None, tx, logging)
            obsolete = [k for k in current if k not in keys]
            if obsolete:
                await self._unlink(src, obsolete, tx, logging)
            await self._link_items(src, items, current, through, tx, logging)

    async def add(
        self,
        instance: Instance,
        targets: Any,
        *,
        through: Optional[Dict[str, Any]] = None,
        transaction=None,
        logging=None,
    ) -> None:
        """Associate targets; already associated ones get their junction values updated."""
        src = self._require_source(instance)
        items = as_list(targets)
        keys = self._target_keys(items)
        if not keys:
            return
        async with self.database.ensure_transaction(transaction) as tx:
            current = await self._current(src, keys, tx, logging)
            await self._link_items(src, items, current, through, tx, logging)

    async def _link_items(self, src, items, current: Dict[Any, Instance], through, tx, logging) -> None:
        done = set()
        for item in items:
            key = self.target_value(item)
            if key is None or key in done:
                continue
            done.add(key)
            values = self._values_for(item, through)
            if key in current:
                if values:
                    await self._relink(current[key], values, tx, logging)
            else:
                await self._link(src, key, values, tx, logging)

    async def remove(self, instance: Instance, targets: Any, *, transaction=None, logging=None) -> None:
        src = self._require_source(instance)
        keys = self._target_keys(as_list(targets))
        if keys:
            await self._unlink(src, keys, transaction, logging)

    async def create(
        self,
        instance: Instance,
        values: Optional[Dict[str, Any]] = None,
        *,
        through: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        transaction=None,
        logging=None,
    ) -> Instance:
        """Create a target and its junction row in one transaction."""
        src = self._require_source(instance)
        data = dict(values or {})
        data.update(self._scope_values())
        if fields is not None:
            fields = list(fields) + [k for k in self._scope_values() if k not in fields]
        async with self.database.ensure_transaction(transaction) as tx:
            target = await self.target.create(data, fields=fields, transaction=tx, logging=logging)
            await self._link(src, target.get(self.target_key), self._values_for(target, through), tx, logging)
        return target

    async def save_nested(self, instance: Instance, child: Instance, node, *, transaction=None, logging=None) -> None:
        src = self._require_source(instance)
        child.set(self._scope_values())
        await child.save(include=[c.to_include() for c in node.children] or None, transaction=transaction, logging=logging)
        await self._link(src, child.get(self.target_key), self._values_for(child, None), transaction, logging)
