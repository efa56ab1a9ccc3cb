from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.types import Integer

from .core.attributes import Attribute, normalize_attribute
from .core.filters import compile_where
from .core.naming import default_table_name, from_camel
from .errors import ConfigurationError
from .instance import Instance, check_name
from .sql.builders import FindOptions

logger = logging.getLogger(__name__)


@dataclass
class FindAndCountResult:
    count: Any
    rows: List[Instance] = field(default_factory=list)

    def __iter__(self):
        yield self.count
        yield self.rows


class Model:
    """A declared model: attributes, primary key, table metadata and associations.

    Created through :meth:`berryorm.registry.ModelRegistry.define`. Query
    methods are coroutines returning :class:`Instance` objects.
    """

    is_model = True

    def __init__(
        self,
        registry,
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
        *,
        table_name: Optional[str] = None,
        schema: Optional[str] = None,
        underscored: Optional[bool] = None,
        indexes: Optional[List[Dict[str, Any]]] = None,
    ):
        self.registry = registry
        self.name = name
        self.underscored = registry.config.underscored if underscored is None else bool(underscored)
        self.table_name = table_name or default_table_name(name, underscored=self.underscored)
        self.schema = schema
        self.indexes: List[Dict[str, Any]] = [dict(i) for i in (indexes or [])]
        self.attributes: Dict[str, Attribute] = {}
        self.associations: Dict[str, Any] = {}
        self.accessors: Dict[str, Tuple[str, str]] = {}
        self.unique_sets: List[Tuple[str, ...]] = []
        declared = [normalize_attribute(n, raw) for n, raw in (attributes or {}).items()]
        pks = [a.name for a in declared if a.primary_key]
        if len(pks) > 1:
            raise ConfigurationError(f"{name} declares more than one primary key: {', '.join(pks)}")
        if not pks:
            declared.insert(0, normalize_attribute('id', Attribute(Integer, primary_key=True, autoincrement=True)))
            pks = ['id']
        for attr in declared:
            self._add(attr)
        self.primary_key: str = pks[0]

    def __repr__(self) -> str:
        return f"<Model {self.name}>"

    # ----- attributes -----
    def _add(self, attr: Attribute) -> None:
        check_name(self.name, attr.name)
        if attr.name in self.associations:
            raise ConfigurationError(f"Attribute '{attr.name}' clashes with an association alias on {self.name}")
        if not attr.field:
            attr.field = from_camel(attr.name) if self.underscored else attr.name
        self.attributes[attr.name] = attr

    def add_attribute(self, name: str, attr: Attribute) -> Attribute:
        attr.name = name
        self._add(attr)
        self.registry.invalidate()
        return attr

    def field(self, name: str) -> str:
        return self.attributes[name].field

    def is_unique(self, name: str) -> bool:
        """True for the primary key, unique attributes and single-column unique indexes."""
        attr = self.attributes.get(name)
        if attr is None:
            return False
        if attr.primary_key or attr.unique is True:
            return True
        for index in self.indexes:
            if not index.get('unique'):
                continue
            fields = list(index.get('fields') or [])
            if len(fields) == 1 and fields[0] in (name, attr.field):
                return True
        return False

    def add_unique_set(self, names: Tuple[str, ...]) -> None:
        key = tuple(names)
        if set(key) not in [set(s) for s in self.unique_sets]:
            self.unique_sets.append(key)
            self.registry.invalidate()

    @property
    def table(self):
        return self.registry.table(self)

    # ----- associations -----
    def has_many(self, target: "Model", **options: Any):
        from .associations import HasMany
        return self._associate(HasMany(self, target, **options))

    def has_one(self, target: "Model", **options: Any):
        from .associations import HasOne
        return self._associate(HasOne(self, target, **options))

    def belongs_to(self, target: "Model", **options: Any):
        from .associations import BelongsTo
        return self._associate(BelongsTo(self, target, **options))

    def belongs_to_many(self, target: "Model", **options: Any):
        from .associations import BelongsToMany
        return self._associate(BelongsToMany(self, target, **options))

    def _associate(self, association):
        self.associations[association.alias] = association
        for op, accessor in association.accessors.items():
            self.accessors[accessor] = (association.alias, op)
        logger.debug(
            "Declared %s %s.%s -> %s (foreign key %s)",
            association.kind, self.name, association.alias, association.target.name, association.foreign_key,
        )
        return association

    def association(self, alias: str):
        assoc = self.associations.get(alias)
        if assoc is None:
            raise ConfigurationError(f"{self.name} has no association '{alias}'")
        return assoc

    # ----- instances -----
    def build(self, values: Optional[Dict[str, Any]] = None) -> Instance:
        return Instance(self, values, is_new=True)

    async def create(self, values: Optional[Dict[str, Any]] = None, *, include: Any = None, fields: Optional[List[str]] = None, transaction=None, logging=None) -> Instance:
        inst = values if isinstance(values, Instance) else self.build(values)
        return await inst.save(fields=fields, include=include, transaction=transaction, logging=logging)

    async def bulk_create(self, records: List[Any], *, fields: Optional[List[str]] = None, transaction=None, logging=None) -> List[Instance]:
        db = self.registry.require_database()
        out: List[Instance] = []
        async with db.ensure_transaction(transaction) as tx:
            for record in records:
                out.append(await self.create(record, fields=fields, transaction=tx, logging=logging))
        return out

    # ----- queries -----
    async def find_all(self, **options: Any) -> List[Instance]:
        return await self.registry.runner.find(self, FindOptions(**options))

    async def find_one(self, **options: Any) -> Optional[Instance]:
        options['limit'] = 1
        rows = await self.find_all(**options)
        return rows[0] if rows else None

    async def find_by_pk(self, value: Any, **options: Any) -> Optional[Instance]:
        if value is None:
            return None
        where = {self.primary_key: value}
        if options.get('where') is not None:
            where = [where, options['where']]
        options['where'] = where
        return await self.find_one(**options)

    async def count(self, **options: Any):
        return await self.registry.runner.count(self, FindOptions(**options))

    async def find_and_count_all(self, **options: Any) -> FindAndCountResult:
        count_options = {k: options[k] for k in ('where', 'include', 'group', 'link', 'transaction', 'logging') if k in options}
        count = await self.count(**count_options)
        rows = await self.find_all(**options)
        return FindAndCountResult(count=count, rows=rows)

    async def update(self, values: Dict[str, Any], *, where: Any = None, transaction=None, logging=None) -> int:
        data = {}
        for name, value in values.items():
            if name not in self.attributes:
                raise ConfigurationError(f"Unknown attribute: {self.name}.{name}")
            if value is None and self.registry.config.omit_null:
                continue
            data[self.field(name)] = value
        if not data:
            return 0
        stmt = self.registry.adapter.compile_update(self.table, data, compile_where(self, self.table, where))
        result = await self.registry.require_database().execute(stmt, transaction=transaction, logging=logging)
        return result.rowcount

    async def destroy(self, *, where: Any = None, transaction=None, logging=None) -> int:
        stmt = self.registry.adapter.compile_delete(self.table, compile_where(self, self.table, where))
        result = await self.registry.require_database().execute(stmt, transaction=transaction, logging=logging)
        return result.rowcount

    # ----- DDL -----
    async def sync(self, *, force: bool = False) -> None:
        await self.registry.sync_tables([self], force=force)

    async def drop(self) -> None:
        await self.registry.drop_tables([self])
