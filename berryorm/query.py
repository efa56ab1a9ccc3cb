from __future__ import annotations

import logging
from typing import Any, List

from .instance import Instance
from .sql.builders import FindOptions

logger = logging.getLogger(__name__)


class QueryRunner:
    """build -> compile -> execute -> assemble, then separate includes.

    Separate includes are loaded level by level: every separate node gathers
    the parent instances produced by the previous step and resolves them with
    one batched association load, which may itself carry joined and separate
    includes.
    """

    def __init__(self, registry):
        self.registry = registry

    async def find(self, model, options: FindOptions) -> List[Instance]:
        db = self.registry.require_database()
        plan = self.registry.builder.build(model, options)
        result = await db.execute(plan.statement, transaction=options.transaction, logging=options.logging)
        instances = self.registry.assembler.assemble(result.rows, plan.shape)
        await self._load_separate(instances, plan.shape, options)
        return instances

    async def count(self, model, options: FindOptions) -> Any:
        db = self.registry.require_database()
        stmt = self.registry.builder.build_count(model, options)
        result = await db.execute(stmt, transaction=options.transaction, logging=options.logging)
        if options.group:
            return result.rows
        if not result.rows:
            return 0
        return int(result.rows[0]['count'] or 0)

    async def _load_separate(self, instances: List[Instance], shape, options: FindOptions) -> None:
        if not instances:
            return
        assembler = self.registry.assembler
        for node in shape.separate:
            logger.debug("Loading separate include %s for %d parent(s)", node.path, len(instances))
            mapping = await node.association.get(
                instances,
                where=node.where,
                include=[c.to_include() for c in node.children] or None,
                order=node.order,
                limit=node.limit,
                offset=node.offset,
                attributes=node.attributes,
                transaction=options.transaction,
                logging=options.logging,
            )
            assembler.merge_separate(instances, node, mapping)
        for child in shape.children:
            await self._load_separate(assembler.collect(instances, child.alias), child, options)
