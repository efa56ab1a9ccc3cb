from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import distinct, exists, func, literal, select
from sqlalchemy.sql import operators
from sqlalchemy.sql.util import ClauseAdapter

from ..core.filters import compile_where
from ..core.includes import IncludeNode, normalize_includes
from ..core.utils import OrderItem, as_list, normalize_order
from ..errors import QueryError, UnsupportedFeatureError

logger = logging.getLogger(__name__)

PARENT_KEY = '__parent_key'
ROW_NUMBER = '__rn'
THROUGH_PREFIX = '__through_'
ORDER_PREFIX = '__order_'


@dataclass
class JoinClause:
    """One join edge; ``nested`` joins are grouped in parentheses with ``target``."""

    path: str
    target: Any
    on: Any
    isouter: bool = True
    nested: List["JoinClause"] = field(default_factory=list)


@dataclass
class LinkParts:
    """Association filter contributed to a batched load (see :class:`Link`)."""

    where: Any
    parent_key: Any
    joins: List[JoinClause] = field(default_factory=list)
    through_model: Any = None
    through_table: Any = None


@dataclass
class Link:
    """Restrict a query to the targets of ``association`` for the given source keys.

    Every returned row carries the source key it belongs to. ``limit``/``offset``
    apply per source key (grouped limit).
    """

    association: Any
    keys: List[Any]
    limit: Optional[int] = None
    offset: Optional[int] = None

    @property
    def partitioned(self) -> bool:
        return self.limit is not None or self.offset is not None


@dataclass
class FindOptions:
    where: Any = None
    include: Any = None
    order: Any = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    attributes: Optional[List[str]] = None
    group: Any = None
    link: Optional[Link] = None
    transaction: Any = None
    logging: Any = None


@dataclass
class QueryDescriptor:
    source: Any
    columns: List[Any] = field(default_factory=list)
    joins: List[JoinClause] = field(default_factory=list)
    where: List[Any] = field(default_factory=list)
    group_by: List[Any] = field(default_factory=list)
    order_by: List[Any] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_fallback: List[Any] = field(default_factory=list)


@dataclass
class NodeShape:
    """How to read one model level back out of result rows."""

    model: Any
    node: Optional[IncludeNode] = None
    labels: Dict[str, str] = field(default_factory=dict)
    key_label: Optional[str] = None
    parent_key_label: Optional[str] = None
    through_model: Any = None
    through_labels: Dict[str, str] = field(default_factory=dict)
    children: List["NodeShape"] = field(default_factory=list)
    separate: List[IncludeNode] = field(default_factory=list)

    @property
    def alias(self) -> Optional[str]:
        return self.node.alias if self.node is not None else None

    @property
    def multiple(self) -> bool:
        return bool(self.node is not None and self.node.multiple)


@dataclass
class QueryPlan:
    descriptor: QueryDescriptor
    statement: Any
    shape: NodeShape
    subquery: bool = False


class _Names:
    """Alias/label allocator that keeps identifiers within the dialect limit."""

    def __init__(self, max_length: int):
        self.max_length = max_length
        self._count = 0

    def fit(self, name: str) -> str:
        if len(name) <= self.max_length:
            return name
        self._count += 1
        digest = hashlib.sha1(name.encode('utf-8')).hexdigest()[:10]
        return f"_{self._count}_{digest}"


def _duplicating(node: IncludeNode) -> bool:
    if node.multiple:
        return True
    return any(_duplicating(c) for c in node.joined_children)


def _has_required(node: IncludeNode) -> bool:
    return node.required or any(_has_required(c) for c in node.joined_children)


def _split_direction(expr):
    """``(expression, asc_op|desc_op|None)`` for an order expression."""
    modifier = getattr(expr, 'modifier', None)
    if modifier in (operators.asc_op, operators.desc_op):
        return expr.element, modifier
    return expr, None


class FindQueryBuilder:
    """Compile ``find``/``count`` requests into query plans.

    The include tree is split into joined and separate parts. Joined includes
    become alias-qualified joins of a single statement; separate includes are
    left to :class:`berryorm.query.QueryRunner`, which loads them through the
    association in a batch keyed by the parent keys of the first result.
    """

    def __init__(self, registry):
        self.registry = registry

    @property
    def adapter(self):
        return self.registry.adapter

    # ----- public -----
    def build(self, model, options: FindOptions) -> QueryPlan:
        names = _Names(self.adapter.max_identifier_length)
        nodes = normalize_includes(model, options.include)
        joined = [n for n in nodes if not n.separate]
        link = options.link
        partition = link is not None and link.partitioned
        if partition and not self.adapter.supports.grouped_limit:
            raise UnsupportedFeatureError(
                f"{self.adapter.name} dialect cannot apply limit/offset per {link.association.source.name}; "
                f"enable emulate_grouped_limit or drop the per-parent limit"
            )
        paged = options.limit is not None or options.offset is not None
        subquery = partition or (paged and any(_duplicating(n) for n in joined))
        group_items = as_list(options.group)
        order_items = normalize_order(options.order)
        root_alias = names.fit(model.name)
        base = model.table.alias(root_alias)
        root_attrs = self._root_attributes(model, options.attributes, nodes, grouped=bool(group_items))
        parts = None
        if link is not None:
            parts = link.association.link_parts(base, link.keys, names.fit(f"{root_alias}->through"))

        shape = NodeShape(model=model, separate=[n for n in nodes if n.separate])
        tables: Dict[str, Tuple[Any, Any]] = {}
        if subquery:
            source, outer_where = self._limited_source(
                model, base, root_alias, root_attrs, options, order_items, group_items, joined, parts, link, names,
            )
        else:
            source, outer_where = base, []

        columns: List[Any] = []
        for attr in root_attrs:
            label = names.fit(attr)
            columns.append(source.c[model.field(attr)].label(label))
            shape.labels[attr] = label
        if model.primary_key in shape.labels:
            shape.key_label = shape.labels[model.primary_key]

        joins: List[JoinClause] = []
        where: List[Any] = list(outer_where)
        if parts is not None:
            shape.parent_key_label = PARENT_KEY
            if subquery:
                columns.append(source.c[PARENT_KEY].label(PARENT_KEY))
            else:
                joins.extend(parts.joins)
                where.append(parts.where)
                columns.append(parts.parent_key.label(PARENT_KEY))
            if parts.through_model is not None:
                shape.through_model = parts.through_model
                for attr in parts.through_model.attributes:
                    fld = parts.through_model.field(attr)
                    label = names.fit(f"__through.{attr}")
                    col = source.c[THROUGH_PREFIX + fld] if subquery else parts.through_table.c[fld]
                    columns.append(col.label(label))
                    shape.through_labels[attr] = label

        include_orders: List[Any] = []
        clauses, shape.children = self._join_nodes(joined, source, names, tables, columns, include_orders)
        joins.extend(clauses)

        if not subquery:
            cond = compile_where(model, base, options.where, resolve=self._resolver(tables))
            if cond is not None:
                where.append(cond)

        if partition:
            order_by = [source.c[ROW_NUMBER].asc()]
        elif subquery:
            order_by = [self._outer_order(n, i, model, source, tables) for n, i in enumerate(order_items)]
        else:
            order_by = [self._order_expr(i, model, source, tables) for i in order_items]
        order_by.extend(include_orders)

        group_by: List[Any] = []
        if group_items and not subquery:
            group_by = [self._ref_expr(g, model, source, tables) for g in group_items]

        descriptor = QueryDescriptor(
            source=source,
            columns=columns,
            joins=joins,
            where=where,
            group_by=group_by,
            order_by=order_by,
            limit=None if subquery else options.limit,
            offset=None if subquery else options.offset,
            order_fallback=[source.c[model.field(model.primary_key)].asc()],
        )
        statement = self.adapter.compile_select(descriptor)
        logger.debug(
            "find plan for %s: joined=%s separate=%s subquery=%s partition=%s",
            model.name, [n.path for n in joined], [n.path for n in shape.separate], subquery, partition,
        )
        return QueryPlan(descriptor=descriptor, statement=statement, shape=shape, subquery=subquery)

    def build_count(self, model, options: FindOptions):
        """``COUNT(DISTINCT pk)`` over the joined includes; per group when ``group`` is set."""
        names = _Names(self.adapter.max_identifier_length)
        nodes = normalize_includes(model, options.include)
        joined = [n for n in nodes if not n.separate]
        root_alias = names.fit(model.name)
        base = model.table.alias(root_alias)
        tables: Dict[str, Tuple[Any, Any]] = {}
        joins: List[JoinClause] = []
        where: List[Any] = []
        if options.link is not None:
            parts = options.link.association.link_parts(base, options.link.keys, names.fit(f"{root_alias}->through"))
            joins.extend(parts.joins)
            where.append(parts.where)
        clauses, _ = self._join_nodes(joined, base, names, tables, [], [])
        joins.extend(clauses)
        cond = compile_where(model, base, options.where, resolve=self._resolver(tables))
        if cond is not None:
            where.append(cond)
        count_col = func.count(distinct(base.c[model.field(model.primary_key)])).label('count')
        columns: List[Any] = []
        group_by: List[Any] = []
        for g in as_list(options.group):
            expr = self._ref_expr(g, model, base, tables)
            group_by.append(expr)
            columns.append(expr.label(names.fit(self._ref_label(g))))
        columns.append(count_col)
        descriptor = QueryDescriptor(source=base, columns=columns, joins=joins, where=where, group_by=group_by)
        return self.adapter.compile_select(descriptor)

    # ----- root level -----
    def _root_attributes(self, model, attributes, nodes: List[IncludeNode], *, grouped: bool) -> List[str]:
        attrs = list(attributes) if attributes is not None else list(model.attributes)
        for a in attrs:
            if a not in model.attributes:
                raise QueryError(f"Unknown attribute: {model.name}.{a}")
        if not grouped and model.primary_key not in attrs:
            attrs.insert(0, model.primary_key)
        # Keys read back by separate includes; never part of GROUP BY
        for node in nodes:
            if node.separate:
                key = node.association.source_attribute
                if key not in attrs:
                    attrs.append(key)
        return attrs

    def _limited_source(self, model, base, root_alias, root_attrs, options, order_items, group_items, joined, parts, link, names):
        """Root rows limited in a subquery before to-many joins multiply them."""
        fields = []
        for attr in root_attrs:
            fld = model.field(attr)
            if fld not in fields:
                fields.append(fld)
        columns: List[Any] = [base.c[f] for f in fields]
        # Root order columns ride along so the outer query can repeat the order
        for index, item in enumerate(order_items):
            if item.path:
                continue
            if item.expr is not None:
                element, _ = _split_direction(self._order_expr(item, model, base, {}))
                columns.append(element.label(ORDER_PREFIX + str(index)))
            elif item.attr in model.attributes and model.field(item.attr) not in fields:
                fields.append(model.field(item.attr))
                columns.append(base.c[model.field(item.attr)])
        joins: List[JoinClause] = []
        where: List[Any] = []
        cond = compile_where(model, base, options.where)
        if cond is not None:
            where.append(cond)
        if parts is not None:
            joins.extend(parts.joins)
            where.append(parts.where)
            columns.append(parts.parent_key.label(PARENT_KEY))
            if parts.through_model is not None:
                for attr in parts.through_model.attributes:
                    fld = parts.through_model.field(attr)
                    columns.append(parts.through_table.c[fld].label(THROUGH_PREFIX + fld))
        for node in joined:
            if node.required:
                where.append(self._exists(node, base, names))
        root_orders = [self._order_expr(i, model, base, {}) for i in order_items if not i.path]
        descriptor = QueryDescriptor(source=base, columns=columns, joins=joins, where=where)
        outer_where: List[Any] = []
        if link is not None and link.partitioned:
            window_order = root_orders or [base.c[model.field(model.primary_key)].asc()]
            columns.append(self.adapter.row_number(parts.parent_key, window_order).label(ROW_NUMBER))
        else:
            if options.limit is not None or options.offset is not None:
                descriptor.order_by = root_orders
            descriptor.limit = options.limit
            descriptor.offset = options.offset
            descriptor.order_fallback = [base.c[model.field(model.primary_key)].asc()]
        if group_items:
            descriptor.group_by = [self._ref_expr(g, model, base, {}) for g in group_items]
        source = self.adapter.compile_select(descriptor).subquery(root_alias)
        if link is not None and link.partitioned:
            lower = link.offset or 0
            outer_where.append(source.c[ROW_NUMBER] > lower)
            if link.limit is not None:
                outer_where.append(source.c[ROW_NUMBER] <= lower + link.limit)
        return source, outer_where

    def _exists(self, node: IncludeNode, parent, names: _Names):
        assoc = node.association
        target = assoc.target.table.alias(names.fit(f"{node.path}->filter"))
        through = None
        if assoc.through is not None:
            through = assoc.through.table.alias(names.fit(f"{node.path}->filter->through"))
        extra = compile_where(assoc.target, target, node.where)
        clause = assoc.join_clauses(parent, target, node.path, extra=extra, isouter=False, through=through)[0]
        from_ = clause.target
        for nested in clause.nested:
            from_ = from_.join(nested.target, nested.on, isouter=nested.isouter)
        return exists(select(literal(1)).select_from(from_).where(clause.on))

    # ----- joined includes -----
    def _join_nodes(self, nodes, parent, names, tables, columns, orders) -> Tuple[List[JoinClause], List[NodeShape]]:
        clauses_out: List[JoinClause] = []
        shapes: List[NodeShape] = []
        for node in nodes:
            assoc = node.association
            target_model = assoc.target
            target = target_model.table.alias(names.fit(node.path))
            tables[node.path] = (target, target_model)
            through = None
            if assoc.through is not None:
                through = assoc.through.table.alias(names.fit(f"{node.path}->through"))
            extra = compile_where(target_model, target, node.where)
            clauses = assoc.join_clauses(parent, target, node.path, extra=extra, isouter=not node.required, through=through)

            shape = NodeShape(model=target_model, node=node, separate=node.separate_children)
            attrs = list(node.attributes) if node.attributes is not None else list(target_model.attributes)
            if target_model.primary_key not in attrs:
                attrs.insert(0, target_model.primary_key)
            for child in node.separate_children:
                key = child.association.source_attribute
                if key not in attrs:
                    attrs.append(key)
            for attr in attrs:
                if attr not in target_model.attributes:
                    raise QueryError(f"Unknown attribute: {target_model.name}.{attr}")
                label = names.fit(f"{node.path}.{attr}")
                columns.append(target.c[target_model.field(attr)].label(label))
                shape.labels[attr] = label
            shape.key_label = shape.labels[target_model.primary_key]
            if through is not None:
                shape.through_model = assoc.through
                for attr in assoc.through.attributes:
                    label = names.fit(f"{node.path}->through.{attr}")
                    columns.append(through.c[assoc.through.field(attr)].label(label))
                    shape.through_labels[attr] = label

            for item in normalize_order(node.order):
                orders.append(self._order_expr(item, target_model, target, tables, prefix=node.path))

            child_clauses, shape.children = self._join_nodes(node.joined_children, target, names, tables, columns, orders)
            if child_clauses:
                if not node.required and any(_has_required(c) for c in node.joined_children):
                    # Required children of an optional include must not drop parent rows
                    clauses[-1].nested.extend(child_clauses)
                else:
                    clauses = clauses + child_clauses
            clauses_out.extend(clauses)
            shapes.append(shape)
        return clauses_out, shapes

    # ----- references -----
    def _resolver(self, tables):
        def resolve(path: str, attr: str):
            found = tables.get(path)
            if found is None:
                raise QueryError(f"'{path}' is not a joined include of this query")
            table, model = found
            if attr not in model.attributes:
                raise QueryError(f"Unknown where column: {model.name}.{attr}")
            return table.c[model.field(attr)]
        return resolve

    def _column(self, item: OrderItem, model, table, tables, prefix: str = ''):
        if item.path:
            key = '->'.join(([prefix] if prefix else []) + list(item.path))
            found = tables.get(key)
            if found is None:
                raise QueryError(f"Order refers to '{item.path_key}', which is not a joined include")
            table, model = found
        if item.attr not in model.attributes:
            raise QueryError(f"Unknown order column: {model.name}.{item.attr}")
        return table.c[model.field(item.attr)]

    def _order_expr(self, item: OrderItem, model, table, tables, prefix: str = ''):
        if item.expr is not None:
            return ClauseAdapter(table).traverse(item.expr)
        col = self._column(item, model, table, tables, prefix)
        return col.desc() if item.direction == 'desc' else col.asc()

    def _outer_order(self, index: int, item: OrderItem, model, source, tables):
        if item.expr is None or item.path:
            return self._order_expr(item, model, source, tables)
        _, modifier = _split_direction(item.expr)
        col = source.c[ORDER_PREFIX + str(index)]
        if modifier is operators.desc_op:
            return col.desc()
        return col.asc()

    def _ref_expr(self, ref: Any, model, table, tables):
        if hasattr(ref, 'compile') and not isinstance(ref, str):
            return ref
        item = normalize_order([ref] if isinstance(ref, str) else [tuple(ref)])[0]
        return self._column(item, model, table, tables)

    @staticmethod
    def _ref_label(ref: Any) -> str:
        if isinstance(ref, str):
            return ref
        if isinstance(ref, (list, tuple)):
            return '.'.join(str(r) for r in ref)
        return str(getattr(ref, 'name', None) or 'group')
