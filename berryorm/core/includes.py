from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import AssociationConfigurationError, EagerLoadingError


@dataclass
class Include:
    """User-facing include request.

    ``target`` may be an association, a model or an alias string. Plain dicts
    with the same keys (``model``/``association``/``alias``/``as`` for the
    target) are accepted wherever an ``Include`` is.
    """

    target: Any = None
    alias: Optional[str] = None
    where: Any = None
    order: Any = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    separate: Optional[bool] = None
    required: Optional[bool] = None
    attributes: Optional[List[str]] = None
    include: List[Any] = field(default_factory=list)


@dataclass
class IncludeNode:
    """Resolved include: one association edge of the request tree."""

    association: Any
    alias: str
    path: str
    where: Any = None
    order: Any = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    separate: bool = False
    required: bool = False
    attributes: Optional[List[str]] = None
    children: List["IncludeNode"] = field(default_factory=list)
    parent: Optional["IncludeNode"] = field(default=None, repr=False)

    @property
    def model(self):
        return self.association.target

    @property
    def multiple(self) -> bool:
        return self.association.multiple

    @property
    def joined_children(self) -> List["IncludeNode"]:
        return [c for c in self.children if not c.separate]

    @property
    def separate_children(self) -> List["IncludeNode"]:
        return [c for c in self.children if c.separate]

    def to_include(self) -> Include:
        return Include(
            target=self.association,
            where=self.where,
            order=self.order,
            limit=self.limit,
            offset=self.offset,
            separate=self.separate,
            required=self.required,
            attributes=self.attributes,
            include=[c.to_include() for c in self.children],
        )


def _coerce(item: Any) -> Include:
    if isinstance(item, Include):
        return item
    if isinstance(item, IncludeNode):
        return item.to_include()
    if isinstance(item, dict):
        data = dict(item)
        target = data.pop('association', None) or data.pop('model', None)
        alias = data.pop('alias', None) or data.pop('as', None)
        nested = data.pop('include', None) or []
        try:
            return Include(target=target if target is not None else alias, alias=alias, include=list(nested), **data)
        except TypeError as exc:
            raise EagerLoadingError(f"Invalid include options: {exc}") from exc
    return Include(target=item)


def resolve_association(model, target: Any, alias: Optional[str] = None):
    """Find the association of ``model`` an include refers to."""
    associations: Dict[str, Any] = model.associations
    if isinstance(target, str):
        assoc = associations.get(target)
        if assoc is None:
            raise EagerLoadingError(f"Association '{target}' is not declared on {model.name}")
        return assoc
    if getattr(target, 'is_association', False):
        if target.source is not model:
            raise EagerLoadingError(f"{target.target.name} ({target.alias}) is not associated to {model.name}")
        return target
    if getattr(target, 'is_model', False):
        candidates = [a for a in associations.values() if a.target is target]
        if alias is not None:
            candidates = [a for a in candidates if a.alias == alias]
        if not candidates:
            raise EagerLoadingError(f"{target.name} is not associated to {model.name}")
        if len(candidates) > 1:
            aliases = ', '.join(sorted(a.alias for a in candidates))
            raise EagerLoadingError(
                f"{target.name} is associated to {model.name} more than once ({aliases}); "
                f"specify the alias in the include"
            )
        return candidates[0]
    raise EagerLoadingError(f"Unsupported include: {target!r}")


def normalize_includes(model, raw: Any, parent: Optional[IncludeNode] = None) -> List[IncludeNode]:
    """Resolve an include request into ``IncludeNode`` trees.

    A to-many include with ``limit``/``offset`` is always resolved as a
    separate query, since a join cannot limit rows per parent. ``required``
    defaults to true when the include has a ``where`` or a required joined
    child.
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raw = [raw]
    nodes: List[IncludeNode] = []
    seen: Dict[str, IncludeNode] = {}
    for item in raw:
        spec = _coerce(item)
        assoc = resolve_association(model, spec.target, spec.alias)
        if assoc.alias in seen:
            raise AssociationConfigurationError(
                f"Duplicate include alias '{assoc.alias}' under {parent.path if parent else model.name}"
            )
        path = assoc.alias if parent is None else f"{parent.path}->{assoc.alias}"
        separate = bool(spec.separate)
        if assoc.multiple and (spec.limit is not None or spec.offset is not None):
            separate = True
        node = IncludeNode(
            association=assoc,
            alias=assoc.alias,
            path=path,
            where=spec.where,
            order=spec.order,
            limit=spec.limit,
            offset=spec.offset,
            separate=separate,
            attributes=list(spec.attributes) if spec.attributes is not None else None,
            parent=parent,
        )
        node.children = normalize_includes(assoc.target, spec.include, node)
        if separate:
            node.required = False
        elif spec.required is not None:
            node.required = bool(spec.required)
        else:
            node.required = bool(spec.where) or any(c.required for c in node.joined_children)
        seen[assoc.alias] = node
        nodes.append(node)
    return nodes
