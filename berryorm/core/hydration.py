from __future__ import annotations

from typing import Any, Dict, List, Mapping, Tuple

from ..instance import Instance


class ResultAssembler:
    """Rebuild object graphs from flat result rows.

    Joins against to-many includes repeat the parent columns once per child
    row; the assembler collapses those repeats while keeping first-seen order:
      - roots are deduplicated by primary key (and by the owning parent key
        when the rows come from a batched association load)
      - children are attached under their alias in database row order
      - outer-join rows without a match (NULL child key) produce no child
      - every requested to-many alias holds a list, to-one aliases ``None``
      - separate results are merged in afterwards, keyed by parent join key
    """

    def __init__(self, registry):
        self.registry = registry

    def assemble(self, rows: List[Mapping[str, Any]], shape) -> List[Instance]:
        roots: List[Instance] = []
        index: Dict[Tuple[Any, Any], Instance] = {}
        cache: Dict[Tuple[int, str, Any], Instance] = {}
        for row in rows:
            values = {attr: row.get(label) for attr, label in shape.labels.items()}
            parent_key = row.get(shape.parent_key_label) if shape.parent_key_label else None
            if shape.key_label is not None:
                ident = row.get(shape.key_label)
            else:
                ident = tuple(values.values())
            inst = index.get((parent_key, ident))
            if inst is None:
                inst = self._instance(shape, values, row)
                inst.__dict__['_parent_key'] = parent_key
                index[(parent_key, ident)] = inst
                roots.append(inst)
            self._attach(inst, row, shape.children, cache)
        return roots

    def _instance(self, shape, values: Dict[str, Any], row: Mapping[str, Any]) -> Instance:
        inst = Instance(shape.model, values, is_new=False)
        included = inst.__dict__['_included']
        for child in shape.children:
            included[child.alias] = [] if child.multiple else None
        for node in shape.separate:
            included[node.alias] = [] if node.multiple else None
        if shape.through_model is not None:
            through_values = {attr: row.get(label) for attr, label in shape.through_labels.items()}
            inst.__dict__['_through'] = Instance(shape.through_model, through_values, is_new=False)
        return inst

    def _attach(self, parent: Instance, row: Mapping[str, Any], children, cache) -> None:
        for child in children:
            ident = row.get(child.key_label)
            if ident is None:
                # LEFT JOIN without a match
                continue
            key = (id(parent), child.alias, ident)
            inst = cache.get(key)
            if inst is None:
                values = {attr: row.get(label) for attr, label in child.labels.items()}
                inst = self._instance(child, values, row)
                cache[key] = inst
                included = parent.__dict__['_included']
                if child.multiple:
                    included[child.alias].append(inst)
                else:
                    included[child.alias] = inst
            self._attach(inst, row, child.children, cache)

    def merge_separate(self, parents: List[Instance], node, mapping: Mapping[Any, Any]) -> None:
        assoc = node.association
        for parent in parents:
            key = assoc.source_value(parent)
            found = mapping.get(key) if key is not None else None
            if node.multiple:
                parent.__dict__['_included'][node.alias] = list(found or [])
            else:
                parent.__dict__['_included'][node.alias] = found

    @staticmethod
    def collect(instances: List[Instance], alias: str) -> List[Instance]:
        """Distinct instances found under ``alias`` across ``instances``."""
        out: List[Instance] = []
        seen = set()
        for inst in instances:
            value = inst.__dict__['_included'].get(alias)
            items = value if isinstance(value, list) else ([value] if value is not None else [])
            for item in items:
                if id(item) not in seen:
                    seen.add(id(item))
                    out.append(item)
        return out
