"""
Coordination gate repository.
"""
from uuid import UUID

from sqlalchemy import select

from shop_mirror.models.coordination import CoordinationGate, GateStatus
from shop_mirror.repositories.base import BaseRepository


class CoordinationGateRepository(BaseRepository[CoordinationGate]):
    model = CoordinationGate

    async def get_or_create(self, source_shop_id: UUID, source_product_id: int) -> CoordinationGate:
        stmt = select(CoordinationGate).where(
            CoordinationGate.source_shop_id == source_shop_id,
            CoordinationGate.source_product_id == source_product_id,
        )
        result = await self.session.execute(stmt)
        gate = result.scalar_one_or_none()
        if gate is None:
            gate = CoordinationGate(
                source_shop_id=source_shop_id,
                source_product_id=source_product_id,
                status=GateStatus.WAITING.value,
                attempts=0,
            )
            self.session.add(gate)
            await self.session.flush()
        return gate
