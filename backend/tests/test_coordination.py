"""
Tests for the coordination gate.
"""
import pytest

from shop_mirror.models.coordination import GateStatus
from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.repositories.coordination import CoordinationGateRepository
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.mirror import ProductMirrorRepository
from shop_mirror.services.coordination import CoordinationGateService, GateAction

PRODUCT_ID = 1001


def make_gate(session, **kwargs) -> CoordinationGateService:
    options = {"max_attempts": 3, "backoff_seconds": 30, "ignored_domains": []}
    options.update(kwargs)
    return CoordinationGateService(session, **options)


async def mirror_with_process(session, source, target, status=None):
    await ProductMirrorRepository(session).upsert(
        source_shop_id=source.id,
        source_product_id=PRODUCT_ID,
        target_shop_id=target.id,
        target_product_gid="gid://shopify/Product/9001",
        target_product_id=9001,
    )
    if status is not None:
        await MediaProcessRepository(session).upsert_status(target.domain, 9001, status)


class TestCoordinationGate:
    """Tests for CoordinationGateService.evaluate."""

    async def test_no_targets_releases(self, session, source_shop):
        decision = await make_gate(session).evaluate(source_shop, PRODUCT_ID)

        assert decision.action == GateAction.RELEASE
        assert decision.proceed
        assert decision.attempts == 1

    async def test_waits_for_missing_mirror(self, session, connected_shops):
        source, target = connected_shops

        decision = await make_gate(session).evaluate(source, PRODUCT_ID)

        assert decision.action == GateAction.WAIT
        assert not decision.proceed
        assert decision.defer_seconds == 30
        assert decision.pending == [{"shop": target.domain, "reason": "no_mirror"}]

        gate = await CoordinationGateRepository(session).get_or_create(source.id, PRODUCT_ID)
        assert gate.status == GateStatus.WAITING.value
        assert gate.attempts == 1
        assert gate.next_eligible_at is not None

    async def test_waits_for_missing_process(self, session, connected_shops):
        source, target = connected_shops
        await mirror_with_process(session, source, target)

        decision = await make_gate(session).evaluate(source, PRODUCT_ID)

        assert decision.action == GateAction.WAIT
        assert decision.pending[0]["reason"] == "no_process"

    async def test_completed_process_releases(self, session, connected_shops):
        source, target = connected_shops
        await mirror_with_process(session, source, target, MediaProcessStatus.COMPLETED)

        decision = await make_gate(session).evaluate(source, PRODUCT_ID)

        assert decision.action == GateAction.RELEASE
        gate = await CoordinationGateRepository(session).get_or_create(source.id, PRODUCT_ID)
        assert gate.status == GateStatus.RELEASED.value

    @pytest.mark.parametrize("status", [MediaProcessStatus.FAILED, MediaProcessStatus.SKIPPED])
    async def test_terminal_failures_are_not_waited_on(self, session, connected_shops, status):
        source, target = connected_shops
        await mirror_with_process(session, source, target, status)

        decision = await make_gate(session).evaluate(source, PRODUCT_ID)

        assert decision.action == GateAction.RELEASE

    async def test_times_out_after_max_attempts(self, session, connected_shops):
        source, target = connected_shops
        await mirror_with_process(session, source, target, MediaProcessStatus.PROCESSING)
        gate = make_gate(session, max_attempts=2)

        first = await gate.evaluate(source, PRODUCT_ID)
        second = await gate.evaluate(source, PRODUCT_ID)

        assert first.action == GateAction.WAIT
        assert first.pending[0]["reason"] == "processing"
        assert second.action == GateAction.TIMEOUT
        assert second.proceed
        assert second.attempts == 2

    async def test_ignored_domain_is_skipped(self, session, connected_shops):
        source, target = connected_shops

        decision = await make_gate(session, ignored_domains=[target.domain.upper()]).evaluate(source, PRODUCT_ID)

        assert decision.action == GateAction.RELEASE

    async def test_fresh_evaluation_resets_attempts(self, session, connected_shops):
        source, _ = connected_shops
        gate = make_gate(session)
        await gate.evaluate(source, PRODUCT_ID)
        await gate.evaluate(source, PRODUCT_ID)

        decision = await gate.evaluate(source, PRODUCT_ID, fresh=True)

        assert decision.attempts == 1
        assert decision.action == GateAction.WAIT
