from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_

from ..core.attributes import NO_DEFAULT, Attribute, Reference, normalize_action, same_type
from ..core.filters import scope_where
from ..core.naming import accessor_names, default_alias
from ..core.utils import as_list, unique_values
from ..errors import AssociationConfigurationError, QueryError, UnsupportedFeatureError
from ..instance import RESERVED_NAMES, Instance
from ..sql.builders import Link

logger = logging.getLogger(__name__)


def naming_collision(name: str, model_name: str) -> AssociationConfigurationError:
    return AssociationConfigurationError(
        f"Naming collision between attribute '{name}' and association '{name}' on model {model_name}. "
        f"To remedy this, change either foreign_key or alias in your association definition"
    )


def foreign_key_spec(raw: Any, default_name: str) -> Tuple[str, Dict[str, Any]]:
    """Split a ``foreign_key`` option into ``(attribute name, attribute options)``."""
    if raw is None:
        return default_name, {}
    if isinstance(raw, str):
        return raw, {}
    if isinstance(raw, Attribute):
        spec: Dict[str, Any] = {'type': raw.type, 'allow_null': raw.allow_null}
        if raw.has_default:
            spec['default'] = raw.default
        if raw.field:
            spec['field'] = raw.field
        return raw.name or default_name, spec
    if isinstance(raw, dict):
        spec = dict(raw)
        name = spec.pop('name', None) or default_name
        return name, spec
    raise AssociationConfigurationError(f"Unsupported foreign_key option: {raw!r}")


def and_all(*parts: Any):
    parts = tuple(p for p in parts if p is not None)
    if not parts:
        return None
    return parts[0] if len(parts) == 1 else and_(*parts)


class Association:
    """Declared relationship between a source and a target model.

    Subclasses provide the join shape (``join_clauses`` / ``link_parts``) and
    the mutation operations. Loading goes through the regular find pipeline:
    ``get`` is ``target.find_all`` restricted by a :class:`Link` to the source
    keys of the given instances.

    Attributes:
        kind: ``has_many``, ``has_one``, ``belongs_to`` or ``belongs_to_many``.
        alias: Name the association is included and accessed under.
        scope: Attribute values every target must match; written on add/create.
        constraints: ``False`` keeps the foreign key out of the database schema.
        accessors: Operation name -> conventional accessor name.
    """

    kind = ''
    multiple = False
    is_association = True
    through = None

    def __init__(
        self,
        source,
        target,
        *,
        alias: Optional[str] = None,
        scope: Optional[Dict[str, Any]] = None,
        constraints: bool = True,
        on_delete: Optional[str] = None,
        on_update: Optional[str] = None,
        key_type: Any = None,
    ):
        if not getattr(target, 'is_model', False):
            raise AssociationConfigurationError(
                f"{source.name}.{self.kind} called with something that's not a model: {target!r}"
            )
        if target.registry is not source.registry:
            raise AssociationConfigurationError(f"{source.name} and {target.name} belong to different registries")
        self.source = source
        self.target = target
        self.alias = alias or default_alias(target.name, multiple=self.multiple)
        self.scope: Dict[str, Any] = dict(scope or {})
        self.constraints = constraints is not False
        self.on_delete = normalize_action(on_delete)
        self.on_update = normalize_action(on_update)
        self.key_type = key_type
        self._validate_alias()
        for name in self.scope:
            if name not in target.attributes:
                raise AssociationConfigurationError(f"Scope refers to unknown attribute {target.name}.{name}")
        self.accessors: Dict[str, str] = accessor_names(self.alias, multiple=self.multiple)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.source.name}.{self.alias} -> {self.target.name}>"

    @property
    def registry(self):
        return self.source.registry

    @property
    def database(self):
        return self.registry.require_database()

    # ----- keys -----
    @property
    def source_attribute(self) -> str:
        """Attribute of the source whose value identifies the targets."""
        raise NotImplementedError

    @property
    def target_key_attribute(self) -> str:
        """Attribute identifying a target in set/add/remove/has."""
        return self.target.primary_key

    def source_value(self, instance: Instance) -> Any:
        return instance.get(self.source_attribute)

    def target_value(self, target: Any) -> Any:
        if isinstance(target, Instance):
            return target.get(self.target_key_attribute)
        if isinstance(target, dict):
            return target.get(self.target_key_attribute)
        return target

    def _target_keys(self, items: List[Any]) -> List[Any]:
        return [k for k in unique_values(self.target_value(t) for t in items) if k is not None]

    def _require_source(self, instance: Instance) -> Any:
        value = self.source_value(instance)
        if value is None:
            raise QueryError(
                f"{self.source.name} instance has no value for '{self.source_attribute}'; save it before using '{self.alias}'"
            )
        return value

    def _scope_values(self) -> Dict[str, Any]:
        """Plain equality scope values, the ones that can be written to a target row."""
        return {k: v for k, v in self.scope.items() if not isinstance(v, (dict, list, tuple))}

    def _require_multiple(self, op: str) -> None:
        if not self.multiple:
            raise UnsupportedFeatureError(f"{self.kind} association '{self.alias}' does not support {op}")

    def _omit(self, value: Any, omit_null: Optional[bool]) -> bool:
        omit = self.registry.config.omit_null if omit_null is None else omit_null
        return value is None and omit

    # ----- declaration -----
    def _validate_alias(self) -> None:
        source = self.source
        if self.alias in source.associations:
            raise AssociationConfigurationError(
                f"You have used the alias '{self.alias}' in two separate associations on {source.name}. "
                f"Aliased associations must have unique aliases"
            )
        if self.alias in source.attributes:
            raise naming_collision(self.alias, source.name)
        if self.alias in RESERVED_NAMES or self.alias.startswith('_'):
            raise AssociationConfigurationError(f"'{self.alias}' cannot be used as an association alias on {source.name}")

    def _declare_foreign_key(self, owner, default_name: str, raw: Any, ref_model, ref_key: str, *, allow_null: Optional[bool] = None) -> str:
        """Create or merge the foreign key attribute ``owner.<name>`` referencing ``ref_model.ref_key``."""
        name, spec = foreign_key_spec(raw, default_name)
        defaulted = raw is None
        ref_attr = ref_model.attributes[ref_key]
        tag = (self.source.name, self.alias)
        attr = owner.attributes.get(name)
        if attr is not None:
            ref = attr.references
            if ref is not None and ref.model != ref_model.name:
                raise AssociationConfigurationError(
                    f"Foreign key {owner.name}.{name} already references {ref.model}; "
                    f"it cannot also reference {ref_model.name}"
                )
            if defaulted:
                for src, alias in attr.owners:
                    if src == self.source.name and alias != self.alias:
                        raise AssociationConfigurationError(
                            f"Foreign key {owner.name}.{name} is already used by association '{alias}' of {src}; "
                            f"pass an explicit foreign_key for '{self.alias}'"
                        )
            if self.key_type is not None and not same_type(attr.type, self.key_type):
                raise AssociationConfigurationError(
                    f"Foreign key {owner.name}.{name} is {type(attr.type).__name__}, not the requested key_type"
                )
            if 'allow_null' in spec:
                attr.allow_null = bool(spec['allow_null'])
            if 'default' in spec and not attr.has_default:
                attr.default = spec['default']
        else:
            type_ = self.key_type if self.key_type is not None else spec.get('type')
            if type_ is None:
                type_ = ref_attr.type.copy()
            if 'allow_null' in spec:
                nullable = bool(spec['allow_null'])
            else:
                nullable = True if allow_null is None else allow_null
            attr = Attribute(
                type=type_,
                allow_null=nullable,
                default=spec.get('default', NO_DEFAULT),
                field=spec.get('field'),
                unique=spec.get('unique', False),
            )
            owner.add_attribute(name, attr)

        prev = attr.references
        on_delete, explicit_delete = self.on_delete, self.on_delete is not None
        if on_delete is None and prev is not None and prev.explicit_delete:
            on_delete, explicit_delete = prev.on_delete, True
        on_update, explicit_update = self.on_update, self.on_update is not None
        if on_update is None and prev is not None and prev.explicit_update:
            on_update, explicit_update = prev.on_update, True
        fallback = 'SET NULL' if attr.allow_null else 'CASCADE'
        enforce = self.constraints and (prev.enforce if prev is not None else True)
        attr.references = Reference(
            model=ref_model.name,
            key=ref_key,
            on_delete=on_delete or fallback,
            on_update=on_update or fallback,
            enforce=enforce,
            explicit_delete=explicit_delete,
            explicit_update=explicit_update,
        )
        if tag not in attr.owners:
            attr.owners.append(tag)
        owner.registry.invalidate()
        return name

    def _target_key(self, name: Optional[str], model, option: str) -> str:
        key = name or model.primary_key
        if key not in model.attributes:
            raise AssociationConfigurationError(f"Unknown {option} {model.name}.{key} for association '{self.alias}'")
        if not model.is_unique(key):
            raise AssociationConfigurationError(
                f"{option} {model.name}.{key} of association '{self.alias}' must be the primary key or unique"
            )
        return key

    # ----- included values -----
    def build_included(self, value: Any) -> Any:
        if self.multiple:
            return [self._coerce_target(v) for v in as_list(value)]
        return self._coerce_target(value) if value is not None else None

    def _coerce_target(self, value: Any) -> Instance:
        if isinstance(value, Instance):
            return value
        if isinstance(value, dict):
            return self.target.build(value)
        raise QueryError(f"Cannot assign {value!r} to association '{self.alias}' of {self.source.name}")

    # ----- query plumbing -----
    def join_clauses(self, parent, target, path: str, *, extra=None, isouter: bool = True, through=None):
        raise NotImplementedError

    def link_parts(self, table, keys: List[Any], through_alias_name: str):
        raise NotImplementedError

    def _scope_on(self, table):
        return scope_where(self.target, table, self.scope)

    # ----- operations -----
    async def get(
        self,
        instances: Any,
        *,
        where: Any = None,
        include: Any = None,
        order: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        attributes: Optional[List[str]] = None,
        transaction=None,
        logging=None,
    ) -> Any:
        """Load the targets of one instance, or of many in one batch.

        A single instance yields a list (to-many) or an instance/``None``
        (to-one). A list yields a dict keyed by each instance's source key
        value, holding an entry for every input instance. Instances without a
        source key value (unsaved, or a null foreign key) share the ``None``
        entry, which is always empty.
        """
        batched = isinstance(instances, (list, tuple))
        items = list(instances) if batched else [instances]
        keys = unique_values(self.source_value(i) for i in items if self.source_value(i) is not None)
        empty = (lambda: []) if self.multiple else (lambda: None)
        result: Dict[Any, Any] = {k: empty() for k in keys}
        if batched and any(self.source_value(i) is None for i in items):
            result[None] = empty()
        if keys:
            options = dict(
                where=where, include=include, order=order, attributes=attributes,
                transaction=transaction, logging=logging,
            )
            rows = await self._load(keys, limit, offset, options)
            for row in rows:
                pk = row._parent_key
                if pk not in result:
                    continue
                if self.multiple:
                    result[pk].append(row)
                elif result[pk] is None:
                    result[pk] = row
        if batched:
            return result
        key = self.source_value(items[0])
        return result.get(key, empty()) if key is not None else empty()

    async def _load(self, keys: List[Any], limit, offset, options: Dict[str, Any]) -> List[Instance]:
        if not self.multiple:
            return await self.target.find_all(link=Link(self, keys), **options)
        if limit is None and offset is None:
            return await self.target.find_all(link=Link(self, keys), **options)
        if len(keys) == 1:
            return await self.target.find_all(link=Link(self, keys), limit=limit, offset=offset, **options)
        if self.registry.adapter.supports.grouped_limit or not self.registry.config.emulate_grouped_limit:
            return await self.target.find_all(link=Link(self, keys, limit=limit, offset=offset), **options)
        logger.debug("Emulating grouped limit for %s.%s over %d key(s)", self.source.name, self.alias, len(keys))
        rows: List[Instance] = []
        for key in keys:
            rows.extend(await self.target.find_all(link=Link(self, [key]), limit=limit, offset=offset, **options))
        return rows

    async def has(self, instance: Instance, targets: Any, *, where: Any = None, transaction=None, logging=None) -> bool:
        """True when every given target (instance or key value) is associated."""
        self._require_multiple('has')
        src = self.source_value(instance)
        keys = self._target_keys(as_list(targets))
        if src is None:
            return False
        if not keys:
            return True
        cond: List[Any] = [{self.target_key_attribute: {'in': keys}}]
        if where is not None:
            cond.append(where)
        found = await self.target.count(where=cond, link=Link(self, [src]), transaction=transaction, logging=logging)
        return found == len(keys)

    async def count(self, instance: Instance, *, where: Any = None, include: Any = None, transaction=None, logging=None) -> int:
        self._require_multiple('count')
        src = self.source_value(instance)
        if src is None:
            return 0
        return await self.target.count(
            where=where, include=include, link=Link(self, [src]), transaction=transaction, logging=logging,
        )

    async def set(self, instance: Instance, targets: Any, **options: Any) -> None:
        raise UnsupportedFeatureError(f"{self.kind} association '{self.alias}' does not support set")

    async def add(self, instance: Instance, targets: Any, **options: Any) -> None:
        self._require_multiple('add')
        raise NotImplementedError

    async def remove(self, instance: Instance, targets: Any, **options: Any) -> None:
        self._require_multiple('remove')
        raise NotImplementedError

    async def create(self, instance: Instance, values: Optional[Dict[str, Any]] = None, **options: Any) -> Instance:
        raise NotImplementedError

    async def save_nested(self, instance: Instance, child: Instance, node, *, transaction=None, logging=None) -> None:
        raise NotImplementedError


class BoundAssociation:
    """An association bound to one source instance (``user.assoc('tasks')``)."""

    def __init__(self, instance: Instance, association: Association):
        self.instance = instance
        self.association = association

    def __repr__(self) -> str:
        return f"<BoundAssociation {self.association!r} of {self.instance!r}>"

    async def get(self, **options: Any) -> Any:
        return await self.association.get(self.instance, **options)

    async def set(self, targets: Any, **options: Any) -> Any:
        return await self.association.set(self.instance, targets, **options)

    async def add(self, targets: Any, **options: Any) -> Any:
        return await self.association.add(self.instance, targets, **options)

    async def add_one(self, target: Any, **options: Any) -> Any:
        return await self.association.add(self.instance, [target], **options)

    async def remove(self, targets: Any, **options: Any) -> Any:
        return await self.association.remove(self.instance, targets, **options)

    async def remove_one(self, target: Any, **options: Any) -> Any:
        return await self.association.remove(self.instance, [target], **options)

    async def has(self, targets: Any, **options: Any) -> bool:
        return await self.association.has(self.instance, targets, **options)

    async def has_one(self, target: Any, **options: Any) -> bool:
        return await self.association.has(self.instance, [target], **options)

    async def count(self, **options: Any) -> int:
        return await self.association.count(self.instance, **options)

    async def create(self, values: Optional[Dict[str, Any]] = None, **options: Any) -> Instance:
        return await self.association.create(self.instance, values, **options)
