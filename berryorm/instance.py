from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .core.includes import normalize_includes
from .errors import ConfigurationError, QueryError

logger = logging.getLogger(__name__)

# Names an attribute or association alias may not take
RESERVED_NAMES = frozenset({
    'assoc', 'changed', 'destroy', 'get', 'invoke', 'is_new_record', 'model',
    'primary_key_value', 'reload', 'save', 'set', 'through', 'to_dict',
})


class Instance:
    """One row of a model, plus any associations loaded with it.

    Attribute values and included associations read as plain attributes
    (``task.title``, ``user.tasks``). Persistence goes through :meth:`save`
    and :meth:`destroy`; association operations through :meth:`assoc`.
    """

    def __init__(self, model, values: Optional[Dict[str, Any]] = None, *, is_new: bool = True):
        d = self.__dict__
        d['_model'] = model
        d['_values'] = {}
        d['_previous'] = {}
        d['_included'] = {}
        d['_is_new'] = is_new
        d['_parent_key'] = None
        d['_through'] = None
        d['_through_values'] = {}
        if values:
            self.set(values)
        if is_new:
            for name, attr in model.attributes.items():
                if name not in self._values and attr.has_default:
                    self._values[name] = attr.default_value()
        else:
            d['_previous'] = dict(self._values)

    # ----- value access -----
    def __getattr__(self, name: str):
        d = self.__dict__
        model = d.get('_model')
        if model is None or name.startswith('_'):
            raise AttributeError(name)
        if name in model.attributes:
            return d['_values'].get(name)
        if name in model.associations:
            if name in d['_included']:
                return d['_included'][name]
            raise AttributeError(f"Association '{name}' of {model.name} was not loaded")
        raise AttributeError(f"{model.name} has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        model = self.__dict__.get('_model')
        if model is not None and (name in model.attributes or name in model.associations):
            self.set(name, value)
            return
        object.__setattr__(self, name, value)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._values:
            return self._values[key]
        if key in self._included:
            return self._included[key]
        return default

    def set(self, key: Any, value: Any = None) -> "Instance":
        if isinstance(key, dict):
            for k, v in key.items():
                self.set(k, v)
            return self
        model = self._model
        if key in model.attributes:
            self._values[key] = value
        elif key in model.associations:
            self._included[key] = model.associations[key].build_included(value)
        elif key == 'through' and isinstance(value, dict):
            self.__dict__['_through_values'] = dict(value)
        return self

    @property
    def model(self):
        return self._model

    @property
    def is_new_record(self) -> bool:
        return self._is_new

    @property
    def primary_key_value(self) -> Any:
        return self._values.get(self._model.primary_key)

    @property
    def through(self) -> Optional["Instance"]:
        """Junction row this instance was loaded through (many-to-many)."""
        return self._through

    def changed(self) -> List[str]:
        if self._is_new:
            return [k for k in self._model.attributes if k in self._values]
        return [k for k, v in self._values.items() if k not in self._previous or self._previous[k] != v]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self._values)
        for alias, value in self._included.items():
            if isinstance(value, list):
                data[alias] = [v.to_dict() for v in value]
            elif isinstance(value, Instance):
                data[alias] = value.to_dict()
            else:
                data[alias] = value
        return data

    def __repr__(self) -> str:
        return f"<{self._model.name} {self._values!r}>"

    # ----- associations -----
    def assoc(self, alias: str):
        from .associations.base import BoundAssociation
        return BoundAssociation(self, self._model.association(alias))

    async def invoke(self, accessor: str, *args: Any, **kwargs: Any) -> Any:
        """Call an association operation by accessor name (``add_task``, ``count_tasks``...)."""
        entry = self._model.accessors.get(accessor)
        if entry is None:
            raise AttributeError(f"{self._model.name} has no association accessor '{accessor}'")
        alias, op = entry
        bound = self.assoc(alias)
        return await getattr(bound, op)(*args, **kwargs)

    # ----- persistence -----
    async def save(self, *, fields: Optional[List[str]] = None, include: Any = None, transaction=None, logging=None) -> "Instance":
        model = self._model
        nodes = normalize_includes(model, include) if include else []
        if not nodes:
            await self._save_row(fields, transaction, logging)
            return self
        db = model.registry.require_database()
        async with db.ensure_transaction(transaction) as tx:
            await self._save_tree(nodes, fields, tx, logging)
        return self

    async def _save_tree(self, nodes, fields, transaction, logging) -> None:
        fields = list(fields) if fields is not None else None
        for node in nodes:
            if node.association.kind != 'belongs_to':
                continue
            child = self._included.get(node.alias)
            if child is None:
                continue
            await child.save(include=[c.to_include() for c in node.children] or None, transaction=transaction, logging=logging)
            key = node.association.foreign_key
            self._values[key] = child.get(node.association.target_key)
            if fields is not None and key not in fields:
                fields.append(key)
        await self._save_row(fields, transaction, logging)
        for node in nodes:
            if node.association.kind == 'belongs_to':
                continue
            value = self._included.get(node.alias)
            children = value if isinstance(value, list) else ([value] if value is not None else [])
            for child in children:
                await node.association.save_nested(self, child, node, transaction=transaction, logging=logging)

    async def _save_row(self, fields, transaction, logging) -> None:
        model = self._model
        registry = model.registry
        db = registry.require_database()
        omit_null = registry.config.omit_null
        pk = model.primary_key
        if self._is_new:
            data: Dict[str, Any] = {}
            for name, attr in model.attributes.items():
                if name not in self._values:
                    continue
                value = self._values[name]
                if name == pk and value is None:
                    continue
                if fields is not None and name not in fields and name != pk:
                    continue
                if value is None and omit_null:
                    continue
                data[attr.field] = value
            stmt = registry.adapter.compile_insert(model.table, data)
            result = await db.execute(stmt, transaction=transaction, logging=logging)
            if self._values.get(pk) is None and result.inserted_primary_key:
                self._values[pk] = result.inserted_primary_key[0]
            self.__dict__['_is_new'] = False
        else:
            names = [n for n in self.changed() if fields is None or n in fields]
            data = {
                model.field(n): self._values[n]
                for n in names
                if not (omit_null and self._values[n] is None)
            }
            if data:
                pk_value = self._previous.get(pk, self._values.get(pk))
                if pk_value is None:
                    raise QueryError(f"Cannot update {model.name} without a primary key value")
                where = model.table.c[model.field(pk)] == pk_value
                stmt = registry.adapter.compile_update(model.table, data, where)
                await db.execute(stmt, transaction=transaction, logging=logging)
        self.__dict__['_previous'] = dict(self._values)

    async def destroy(self, *, transaction=None, logging=None) -> int:
        model = self._model
        pk_value = self.primary_key_value
        if pk_value is None:
            raise QueryError(f"Cannot destroy {model.name} without a primary key value")
        db = model.registry.require_database()
        where = model.table.c[model.field(model.primary_key)] == pk_value
        result = await db.execute(model.registry.adapter.compile_delete(model.table, where), transaction=transaction, logging=logging)
        return result.rowcount

    async def reload(self, *, include: Any = None, transaction=None, logging=None) -> "Instance":
        model = self._model
        fresh = await model.find_by_pk(self.primary_key_value, include=include, transaction=transaction, logging=logging)
        if fresh is None:
            raise QueryError(f"{model.name} {self.primary_key_value!r} no longer exists")
        self._values.clear()
        self._values.update(fresh._values)
        self.__dict__['_previous'] = dict(self._values)
        if include:
            self._included.update(fresh._included)
        return self


def check_name(model_name: str, name: str) -> None:
    if name in RESERVED_NAMES or name.startswith('_'):
        raise ConfigurationError(f"'{name}' cannot be used as a name on {model_name}; it is reserved by Instance")
