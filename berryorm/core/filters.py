from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, not_, or_
from sqlalchemy.sql.elements import ClauseElement

from ..errors import QueryError

# Global operator registry (extensible)
OPERATOR_REGISTRY: Dict[str, Callable[[Any, Any], Any]] = {
    'eq': lambda col, v: col.is_(None) if v is None else col == v,
    'ne': lambda col, v: col.is_not(None) if v is None else col != v,
    'is': lambda col, v: col.is_(v),
    'not': lambda col, v: col.is_not(v),
    'lt': lambda col, v: col < v,
    'lte': lambda col, v: col <= v,
    'gt': lambda col, v: col > v,
    'gte': lambda col, v: col >= v,
    'like': lambda col, v: col.like(v),
    'not_like': lambda col, v: ~col.like(v),
    'ilike': lambda col, v: getattr(col, 'ilike', lambda x: func.lower(col).like(func.lower(x)))(v),
    'not_ilike': lambda col, v: ~getattr(col, 'ilike', lambda x: func.lower(col).like(func.lower(x)))(v),
    'in': lambda col, v: col.in_(list(v) if isinstance(v, (list, tuple, set)) else [v]),
    'not_in': lambda col, v: ~col.in_(list(v) if isinstance(v, (list, tuple, set)) else [v]),
    'between': lambda col, v: col.between(v[0], v[1]),
    'not_between': lambda col, v: ~col.between(v[0], v[1]),
    'contains': lambda col, v: col.contains(v),
    'starts_with': lambda col, v: col.like(f"{v}%"),
    'ends_with': lambda col, v: col.like(f"%{v}"),
}

_LOGICAL = ('and', 'or', 'not')

# Resolves ``$path.attr$`` keys to a column of a joined include.
PathResolver = Callable[[str, str], Any]


def register_operator(name: str, fn: Callable[[Any, Any], Any]):
    OPERATOR_REGISTRY[name] = fn


def _apply_operator(col, op: str, value: Any):
    fn = OPERATOR_REGISTRY.get(op)
    if fn is None:
        raise QueryError(f"Unknown where operator: {op}")
    if op in ('between', 'not_between') and not (isinstance(value, (list, tuple)) and len(value) == 2):
        raise QueryError(f"Operator '{op}' expects a pair of values")
    return fn(col, value)


def _value_expr(col, value: Any):
    if isinstance(value, dict):
        parts = [_apply_operator(col, str(op), v) for op, v in value.items()]
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else and_(*parts)
    if value is None:
        return col.is_(None)
    if isinstance(value, (list, tuple, set)):
        return col.in_(list(value))
    return col == value


def compile_where(
    model,
    table,
    where: Any,
    *,
    resolve: Optional[PathResolver] = None,
):
    """Compile a where mapping into a SQLAlchemy boolean expression.

    Accepted forms:
      - ``{'title': 'x'}`` equality; ``None`` becomes IS NULL, a list becomes IN
      - ``{'rank': {'gt': 1, 'lte': 5}}`` operators from ``OPERATOR_REGISTRY``
      - ``{'or': [{...}, {...}]}``, ``{'and': [...]}``, ``{'not': {...}}``
      - ``{'$tasks.title$': 'x'}`` column of a joined include (``resolve`` required)
      - a SQLAlchemy expression, or a callable receiving the aliased table
      - a list of any of the above (AND-ed)

    Column references are bound to ``table`` which is typically an alias, so
    the same model joined twice never yields ambiguous columns.
    """
    if where is None:
        return None
    if isinstance(where, ClauseElement):
        return where
    if callable(where):
        return where(table)
    if isinstance(where, (list, tuple)):
        parts = [compile_where(model, table, w, resolve=resolve) for w in where]
        parts = [p for p in parts if p is not None]
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else and_(*parts)
    if not isinstance(where, dict):
        raise QueryError(f"Unsupported where form: {where!r}")
    exprs: List[Any] = []
    for key, value in where.items():
        k = str(key)
        if k in _LOGICAL:
            exprs.append(_logical(model, table, k, value, resolve))
            continue
        col = _column_for(model, table, k, resolve)
        expr = _value_expr(col, value)
        if expr is not None:
            exprs.append(expr)
    exprs = [e for e in exprs if e is not None]
    if not exprs:
        return None
    return exprs[0] if len(exprs) == 1 else and_(*exprs)


def _logical(model, table, op: str, value: Any, resolve):
    if op == 'not':
        inner = compile_where(model, table, value, resolve=resolve)
        return not_(inner) if inner is not None else None
    items = value if isinstance(value, (list, tuple)) else [{k: v} for k, v in dict(value).items()]
    parts = [compile_where(model, table, item, resolve=resolve) for item in items]
    parts = [p for p in parts if p is not None]
    if not parts:
        return None
    return or_(*parts) if op == 'or' else and_(*parts)


def _column_for(model, table, key: str, resolve):
    if key.startswith('$') and key.endswith('$') and len(key) > 2:
        ref = key[1:-1]
        if '.' not in ref:
            return _column_for(model, table, ref, resolve)
        path, attr = ref.rsplit('.', 1)
        if resolve is None:
            raise QueryError(f"Include column reference not allowed here: {key}")
        return resolve(path.replace('.', '->'), attr)
    attr = model.attributes.get(key)
    if attr is None:
        raise QueryError(f"Unknown where column: {model.name}.{key}")
    return table.c[model.field(key)]


def scope_where(model, table, scope: Optional[Dict[str, Any]]):
    if not scope:
        return None
    return compile_where(model, table, scope)
