"""
Coordination gate - waits for every connected target to finish image
processing of a product before a dependent action runs on the source.

The gate never sleeps. Each evaluation records its attempt on a
CoordinationGate row and tells the caller whether to proceed or to
re-enqueue itself after a fixed delay.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.logging import get_logger
from shop_mirror.models.coordination import CoordinationGate, GateStatus
from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.models.shop import Shop
from shop_mirror.repositories.coordination import CoordinationGateRepository
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.mirror import ProductMirrorRepository
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.services.normalization import legacy_id_from_gid

logger = get_logger(__name__)


class GateAction(str, Enum):
    RELEASE = "release"
    WAIT = "wait"
    TIMEOUT = "timeout"


@dataclass
class GateDecision:
    action: GateAction
    attempts: int
    pending: list[dict[str, Any]] = field(default_factory=list)
    defer_seconds: Optional[int] = None

    @property
    def proceed(self) -> bool:
        """Release and timeout both let the dependent action run."""
        return self.action in (GateAction.RELEASE, GateAction.TIMEOUT)


class CoordinationGateService:
    """Evaluates the gate for one source product."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        max_attempts: int,
        backoff_seconds: int,
        ignored_domains: Iterable[str] = (),
    ) -> None:
        self.session = session
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.ignored_domains = {domain.strip().lower() for domain in ignored_domains if domain}
        self.gates = CoordinationGateRepository(session)
        self.shops = ShopRepository(session)
        self.mirrors = ProductMirrorRepository(session)
        self.media_processes = MediaProcessRepository(session)

    async def evaluate(
        self,
        source_shop: Shop,
        source_product_id: int,
        *,
        fresh: bool = False,
    ) -> GateDecision:
        """
        Record one gate attempt and decide.

        Args:
            source_shop: Shop whose product waits
            source_product_id: Legacy id of the source product
            fresh: First evaluation for a new event, resets a finished gate
        """
        gate = await self.gates.get_or_create(source_shop.id, source_product_id)
        if fresh:
            self._reset(gate)

        pending = await self.pending_targets(source_shop, source_product_id)
        gate.attempts = (gate.attempts or 0) + 1
        gate.last_pending = pending
        log = logger.bind(
            source_shop=source_shop.domain,
            source_product_id=source_product_id,
            attempts=gate.attempts,
        )

        if not pending:
            gate.status = GateStatus.RELEASED.value
            gate.next_eligible_at = None
            await self.session.flush()
            log.info("Coordination gate released")
            return GateDecision(GateAction.RELEASE, gate.attempts)

        if gate.attempts >= self.max_attempts:
            gate.status = GateStatus.TIMED_OUT.value
            gate.next_eligible_at = None
            await self.session.flush()
            log.warning("Coordination gate timed out, proceeding", pending=pending)
            return GateDecision(GateAction.TIMEOUT, gate.attempts, pending)

        gate.status = GateStatus.WAITING.value
        gate.next_eligible_at = datetime.now(timezone.utc) + timedelta(seconds=self.backoff_seconds)
        await self.session.flush()
        log.info("Coordination gate waiting", pending=pending, defer_seconds=self.backoff_seconds)
        return GateDecision(GateAction.WAIT, gate.attempts, pending, self.backoff_seconds)

    async def pending_targets(self, source_shop: Shop, source_product_id: int) -> list[dict[str, Any]]:
        """Targets whose image processing for this product is not finished yet."""
        pending: list[dict[str, Any]] = []
        for target in await self.shops.list_active_targets(source_shop.id):
            if target.domain.lower() in self.ignored_domains:
                continue

            mirror = await self.mirrors.get_for(source_shop.id, source_product_id, target.id)
            if mirror is None or not mirror.target_product_gid:
                pending.append({"shop": target.domain, "reason": "no_mirror"})
                continue

            product_id = mirror.target_product_id or legacy_id_from_gid(mirror.target_product_gid)
            process = await self.media_processes.get(target.domain, product_id) if product_id else None
            if process is None:
                pending.append({"shop": target.domain, "product_id": product_id, "reason": "no_process"})
                continue

            if process.status == MediaProcessStatus.COMPLETED.value:
                continue
            if process.status in MediaProcessStatus.terminal_failures():
                logger.warning(
                    "Target media process ended without completing, not waiting on it",
                    target_shop=target.domain,
                    product_id=product_id,
                    status=process.status,
                    error=process.last_error,
                )
                continue
            pending.append({"shop": target.domain, "product_id": product_id, "reason": process.status})
        return pending

    @staticmethod
    def _reset(gate: CoordinationGate) -> None:
        gate.attempts = 0
        gate.status = GateStatus.WAITING.value
        gate.next_eligible_at = None
        gate.last_pending = None
