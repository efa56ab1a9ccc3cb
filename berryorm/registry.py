from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Column, ForeignKeyConstraint, Index, MetaData, Table, UniqueConstraint
from sqlalchemy.schema import CreateIndex

from .adapters import BaseAdapter
from .config import RegistryConfig
from .core.attributes import unique_groups
from .core.hydration import ResultAssembler
from .errors import ConfigurationError
from .events import EventChannel
from .model import Model
from .query import QueryRunner
from .sql.builders import FindQueryBuilder

# Project logger
_logger = logging.getLogger("berryorm")


class ModelRegistry:
    """Holds declared models and builds their SQLAlchemy tables.

    Tables are rebuilt lazily (two passes: columns, then foreign keys) after
    any model or association declaration, so declaration order between
    models does not matter.

    Example:
        db = Database("sqlite+aiosqlite:///app.db")
        registry = ModelRegistry(db)
        User = registry.define('User', {'username': String})
        Task = registry.define('Task', {'title': String})
        User.has_many(Task)
        await registry.sync()
    """

    def __init__(self, database=None, *, adapter: Optional[BaseAdapter] = None, config: Optional[RegistryConfig] = None):
        self.database = database
        self.adapter: BaseAdapter = adapter or (database.adapter if database is not None else BaseAdapter())
        self.config = config or RegistryConfig()
        self.events: EventChannel = database.events if database is not None else EventChannel()
        self.models: Dict[str, Model] = {}
        self.builder = FindQueryBuilder(self)
        self.assembler = ResultAssembler(self)
        self.runner = QueryRunner(self)
        self._metadata: Optional[MetaData] = None
        self._tables: Dict[str, Table] = {}

    # ----- declaration -----
    def define(
        self,
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
        *,
        table_name: Optional[str] = None,
        schema: Optional[str] = None,
        underscored: Optional[bool] = None,
        indexes: Optional[List[Dict[str, Any]]] = None,
    ) -> Model:
        if name in self.models:
            raise ConfigurationError(f"Model '{name}' is already defined")
        model = Model(self, name, attributes, table_name=table_name, schema=schema, underscored=underscored, indexes=indexes)
        self.models[name] = model
        self.invalidate()
        return model

    def model(self, name: str) -> Model:
        try:
            return self.models[name]
        except KeyError:
            raise ConfigurationError(f"Model '{name}' is not defined") from None

    def association(self, model: Any, alias: str):
        """Bound-operation lookup by ``(model, alias)``."""
        target = self.model(model) if isinstance(model, str) else model
        return target.association(alias)

    def require_database(self):
        if self.database is None:
            raise ConfigurationError("No database bound to this registry")
        return self.database

    def transaction(self):
        return self.require_database().transaction()

    # ----- tables -----
    def invalidate(self) -> None:
        self._metadata = None
        self._tables = {}

    @property
    def metadata(self) -> MetaData:
        if self._metadata is None:
            self._build_tables()
        return self._metadata

    def table(self, model: Model) -> Table:
        if self._metadata is None:
            self._build_tables()
        return self._tables[model.name]

    def _build_tables(self) -> None:
        metadata = MetaData()
        tables: Dict[str, Table] = {}
        for model in self.models.values():
            name, schema = self.adapter.table_name_for(model.table_name, model.schema, self.config.schema_delimiter)
            columns = []
            for attr in model.attributes.values():
                if attr.primary_key:
                    autoincrement: Any = True if attr.autoincrement else 'auto'
                else:
                    autoincrement = False
                columns.append(Column(
                    attr.field,
                    attr.type,
                    primary_key=attr.primary_key,
                    nullable=attr.allow_null,
                    unique=attr.unique is True,
                    autoincrement=autoincrement,
                ))
            extras: List[Any] = []
            for group in unique_groups(model.attributes).values():
                extras.append(UniqueConstraint(*[model.field(n) for n in group]))
            for names in model.unique_sets:
                extras.append(UniqueConstraint(*[model.field(n) for n in names]))
            for i, index in enumerate(model.indexes):
                fields = [model.field(f) if f in model.attributes else f for f in index.get('fields') or []]
                index_name = index.get('name') or f"{name}_{'_'.join(fields)}".replace('.', '_')
                extras.append(Index(index_name, *fields, unique=bool(index.get('unique'))))
            tables[model.name] = Table(name, metadata, *columns, *extras, schema=schema)
        for model in self.models.values():
            table = tables[model.name]
            for attr in model.attributes.values():
                ref = attr.references
                if ref is None or not ref.enforce:
                    continue
                target = self.model(ref.model)
                target_table = tables[target.name]
                table.append_constraint(ForeignKeyConstraint(
                    [table.c[attr.field]],
                    [target_table.c[target.field(ref.key)]],
                    ondelete=self.adapter.constraint_action(ref.on_delete),
                    onupdate=self.adapter.constraint_action(ref.on_update),
                ))
        self._metadata = metadata
        self._tables = tables

    # ----- DDL -----
    def _ordered(self, models: Iterable[Model]) -> List[Table]:
        wanted = {self.table(m).key for m in models}
        return [t for t in self.metadata.sorted_tables if t.key in wanted]

    async def sync(self, *, force: bool = False) -> None:
        """Create every table (dropping them first with ``force``)."""
        await self.sync_tables(list(self.models.values()), force=force)

    async def sync_tables(self, models: List[Model], *, force: bool = False) -> None:
        db = self.require_database()
        tables = self._ordered(models)
        if force:
            for table in reversed(tables):
                await db.execute(self.adapter.compile_drop_table(table))
        if self.adapter.supports.schemas:
            for schema in sorted({m.schema for m in models if m.schema}):
                await self.create_schema(schema)
        for table in tables:
            _logger.debug("Creating table %s", table.fullname)
            await db.execute(self.adapter.compile_create_table(table))
            for index in table.indexes:
                await db.execute(CreateIndex(index, if_not_exists=True))

    async def drop_all(self) -> None:
        await self.drop_tables(list(self.models.values()))

    async def drop_tables(self, models: List[Model]) -> None:
        db = self.require_database()
        for table in reversed(self._ordered(models)):
            await db.execute(self.adapter.compile_drop_table(table))

    async def create_schema(self, name: str) -> None:
        stmt = self.adapter.compile_create_schema(name)
        if stmt is not None:
            await self.require_database().execute(stmt)

    async def drop_schema(self, name: str) -> None:
        stmt = self.adapter.compile_drop_schema(name)
        if stmt is not None:
            await self.require_database().execute(stmt)
