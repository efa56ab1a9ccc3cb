"""berryorm public API with lazy exports.

Submodules are imported on first attribute access so that lightweight
pieces (errors, config, naming helpers) can be used without pulling in
SQLAlchemy's async engine.

Exposes:
- ModelRegistry, Model, Instance, Database, Transaction
- attribute, Include, RegistryConfig, Settings
- the error classes of :mod:`berryorm.errors`
"""
from __future__ import annotations

from .errors import *  # noqa: F401,F403
from .errors import __all__ as _error_names

_LAZY = {
    'ModelRegistry': 'registry',
    'Model': 'model',
    'FindAndCountResult': 'model',
    'Instance': 'instance',
    'Database': 'database',
    'Transaction': 'database',
    'QueryResult': 'database',
    'EventChannel': 'events',
    'RegistryConfig': 'config',
    'Settings': 'config',
}


def __getattr__(name: str):  # PEP 562 lazy exports
    import importlib as _importlib
    if name in _LAZY:
        return getattr(_importlib.import_module(f"{__name__}.{_LAZY[name]}"), name)
    if name in {'attribute', 'Attribute'}:
        from .core import attributes as _attributes
        return getattr(_attributes, name)
    if name == 'Include':
        from .core.includes import Include as _Include
        return _Include
    if name in {'HasMany', 'HasOne', 'BelongsTo', 'BelongsToMany'}:
        _associations = _importlib.import_module(__name__ + '.associations')
        return getattr(_associations, name)
    raise AttributeError(name)


__all__ = [
    *_LAZY,
    'attribute', 'Attribute', 'Include',
    'HasMany', 'HasOne', 'BelongsTo', 'BelongsToMany',
    *_error_names,
]
