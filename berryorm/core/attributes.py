from __future__ import annotations

from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.types import Integer, TypeEngine

from ..errors import ConfigurationError


class _NoDefault:
    def __repr__(self) -> str:  # pragma: no cover - debug aid
        return 'NO_DEFAULT'


NO_DEFAULT: Any = _NoDefault()

ACTIONS = ('CASCADE', 'SET NULL', 'SET DEFAULT', 'RESTRICT', 'NO ACTION')


@dataclass
class Reference:
    """Foreign key target recorded on an attribute by an association."""

    model: str
    key: str
    on_delete: Optional[str] = None
    on_update: Optional[str] = None
    enforce: bool = True
    explicit_delete: bool = False
    explicit_update: bool = False


@dataclass
class Attribute:
    """Normalized attribute (column) description of a model.

    Attributes:
        type: SQLAlchemy type instance.
        allow_null: Column nullability.
        default: Python side default applied when an instance is built
            (value or zero-arg callable); ``NO_DEFAULT`` when absent.
        primary_key / autoincrement / unique: Column flags. ``unique`` may be a
            string naming a composite unique constraint shared by attributes.
        field: Column name; defaults to the attribute name (or its snake_case
            form on underscored models).
        references: Set when the attribute is a foreign key.
        owners: ``(source model, alias)`` of associations using this key.
    """

    type: Any = None
    allow_null: bool = True
    default: Any = NO_DEFAULT
    primary_key: bool = False
    autoincrement: bool = False
    unique: Any = False
    field: Optional[str] = None
    references: Optional[Reference] = None
    name: Optional[str] = None
    owners: List[Tuple[str, str]] = dc_field(default_factory=list)

    def __post_init__(self):
        self.type = coerce_type(self.type)
        if self.primary_key:
            self.allow_null = False

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def default_value(self) -> Any:
        if not self.has_default:
            return None
        return self.default() if callable(self.default) else self.default


def coerce_type(raw: Any) -> TypeEngine:
    if raw is None:
        return Integer()
    if isinstance(raw, type) and issubclass(raw, TypeEngine):
        return raw()
    if isinstance(raw, TypeEngine):
        return raw
    raise ConfigurationError(f"Unsupported attribute type: {raw!r}")


def same_type(a: Any, b: Any) -> bool:
    return type(coerce_type(a)) is type(coerce_type(b))


def attribute(type_: Any = None, /, **options: Any) -> Attribute:
    """Declare a model attribute.

    Examples:
        User = registry.define('User', {
            'username': attribute(String(50), allow_null=False),
            'email': attribute(String, unique=True, field='mail'),
        })
    """
    return Attribute(type=type_, **options)


def normalize_attribute(name: str, raw: Any) -> Attribute:
    """Accept an :class:`Attribute`, a SQLAlchemy type (class or instance) or a dict."""
    if isinstance(raw, Attribute):
        attr = raw
    elif isinstance(raw, dict):
        data = dict(raw)
        type_ = data.pop('type', None)
        try:
            attr = Attribute(type=type_, **data)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid options for attribute '{name}': {exc}") from exc
    else:
        attr = Attribute(type=raw)
    attr.name = name
    return attr


def normalize_action(action: Optional[str]) -> Optional[str]:
    if action is None:
        return None
    val = str(action).replace('_', ' ').strip().upper()
    if val not in ACTIONS:
        raise ConfigurationError(f"Unknown referential action: {action!r}")
    return val


def unique_groups(attributes: Dict[str, Attribute]) -> Dict[str, List[str]]:
    """Group attributes by named composite unique key (``unique='name'``)."""
    groups: Dict[str, List[str]] = {}
    for name, attr in attributes.items():
        if isinstance(attr.unique, str) and attr.unique:
            groups.setdefault(attr.unique, []).append(name)
    return groups
