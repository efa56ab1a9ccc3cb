from __future__ import annotations

import re
from typing import Dict

from inflection import pluralize, singularize, underscore

__all__ = [
    'from_camel',
    'pluralize',
    'singularize',
    'underscore',
    'default_table_name',
    'default_alias',
    'accessor_names',
]

_camel_to_snake_pattern = re.compile(r'(?<!^)(?=[A-Z])')


def from_camel(name: str) -> str:
    """Convert lower/upper camelCase to snake_case."""
    if not name:
        return name
    return _camel_to_snake_pattern.sub('_', str(name)).lower()


def default_table_name(model_name: str, *, underscored: bool = False) -> str:
    plural = pluralize(model_name)
    return underscore(plural) if underscored else plural


def default_alias(model_name: str, *, multiple: bool) -> str:
    """``Task`` -> ``tasks`` for to-many, ``task`` for to-one."""
    base = underscore(model_name)
    return pluralize(base) if multiple else singularize(base)


def accessor_names(alias: str, *, multiple: bool) -> Dict[str, str]:
    """Map operation name -> conventional accessor name for an alias.

    ``tasks`` yields ``get_tasks``, ``set_tasks``, ``add_task``, ``add_tasks``,
    ``remove_task``, ``remove_tasks``, ``has_task``, ``has_tasks``,
    ``count_tasks`` and ``create_task``.
    """
    if not multiple:
        return {'get': f'get_{alias}', 'set': f'set_{alias}', 'create': f'create_{alias}'}
    plural = alias
    single = singularize(alias)
    if single == plural:
        single = f'{alias}_item'
    return {
        'get': f'get_{plural}',
        'set': f'set_{plural}',
        'add': f'add_{plural}',
        'add_one': f'add_{single}',
        'remove': f'remove_{plural}',
        'remove_one': f'remove_{single}',
        'has': f'has_{plural}',
        'has_one': f'has_{single}',
        'count': f'count_{plural}',
        'create': f'create_{single}',
    }
