from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy.sql.elements import ClauseElement

from ..errors import QueryError

_DIRECTIONS = ('asc', 'desc')


def dir_value(order_dir: Any) -> str:
    if order_dir is None:
        return 'asc'
    try:
        val = getattr(order_dir, 'value', order_dir)
        val = str(val).strip().lower()
    except Exception:
        return 'asc'
    if val not in _DIRECTIONS:
        raise QueryError(f"Unknown order direction: {order_dir!r}")
    return val


@dataclass
class OrderItem:
    """One ORDER BY entry.

    ``path`` is the include path (``('tasks',)``) for columns of joined
    includes and empty for root columns. ``expr`` carries a raw SQLAlchemy
    expression; columns of a model table in it are rebound to the query alias.
    """

    attr: Optional[str] = None
    direction: str = 'asc'
    path: Tuple[str, ...] = ()
    expr: Any = None

    @property
    def path_key(self) -> str:
        return '->'.join(self.path)


def _segment(seg: Any) -> List[str]:
    alias = getattr(seg, 'alias', None)
    if alias is not None and not isinstance(seg, str):
        return [str(alias)]
    return [p for p in str(seg).replace('->', '.').split('.') if p]


def _from_string(raw: str) -> OrderItem:
    text = raw.strip()
    direction = 'asc'
    if ':' in text:
        text, d = text.rsplit(':', 1)
        direction = dir_value(d)
    elif text.startswith('-'):
        text, direction = text[1:], 'desc'
    parts = _segment(text)
    if not parts:
        raise QueryError(f"Empty order item: {raw!r}")
    return OrderItem(attr=parts[-1], direction=direction, path=tuple(parts[:-1]))


def _from_sequence(raw: Iterable[Any]) -> OrderItem:
    items = list(raw)
    if not items:
        raise QueryError("Empty order item")
    direction = 'asc'
    last = items[-1]
    if isinstance(last, str) and last.strip().lower() in _DIRECTIONS:
        direction = last.strip().lower()
        items = items[:-1]
    if not items:
        raise QueryError(f"Order item without attribute: {raw!r}")
    path: List[str] = []
    for seg in items[:-1]:
        path.extend(_segment(seg))
    tail = _segment(items[-1])
    path.extend(tail[:-1])
    return OrderItem(attr=tail[-1], direction=direction, path=tuple(path))


def normalize_order(order: Any) -> List[OrderItem]:
    """Normalize the accepted order forms.

    - ``'title'``, ``'title:desc'``, ``'-title'``, ``'tasks.title:desc'``
    - ``('title', 'desc')``, ``('tasks', 'title', 'desc')`` (segments may be
      association objects)
    - a SQLAlchemy expression such as ``func.random()`` or ``col.desc()``
    - a list mixing any of the above
    """
    if order is None:
        return []
    if isinstance(order, (str, ClauseElement)) or (
        isinstance(order, tuple) and order and all(isinstance(x, str) for x in order)
        and order[-1].strip().lower() in _DIRECTIONS
    ):
        order = [order]
    out: List[OrderItem] = []
    for item in order:
        if isinstance(item, OrderItem):
            out.append(item)
        elif isinstance(item, ClauseElement):
            out.append(OrderItem(expr=item))
        elif isinstance(item, str):
            out.append(_from_string(item))
        elif isinstance(item, (list, tuple)):
            out.append(_from_sequence(item))
        else:
            raise QueryError(f"Unsupported order item: {item!r}")
    return out


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def unique_values(values: Iterable[Any]) -> List[Any]:
    """Distinct, non-null values preserving first-seen order."""
    seen = set()
    out: List[Any] = []
    for v in values:
        if v is None or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out
