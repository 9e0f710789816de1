"""Scheduler claims: each due plan or trial is dispatched exactly once."""

import asyncio
from datetime import timedelta

import pytest

from commerce import store
from commerce.errors import ChargeFailed, ItemsNotFound
from commerce.models import utc_now
from commerce.scheduler import SCHEDULER_SOURCE, Scheduler


class RecordingFlex:
    def __init__(self, fail_for=(), error=None):
        self.processed = []
        self.fail_for = set(fail_for)
        self.error = error or RuntimeError("boom")

    async def process(self, plan_id, source=None):
        self.processed.append((plan_id, source))
        if plan_id in self.fail_for:
            raise self.error


class RecordingTrials:
    def __init__(self):
        self.converted = []

    async def convert(self, customer_id, source=None):
        self.converted.append((customer_id, source))


def make_scheduler(session_factory, settings, flex=None, trials=None):
    return Scheduler(session_factory, flex or RecordingFlex(), trials or RecordingTrials(), settings)


class TestFlexOrders:
    async def test_only_due_active_plans_are_claimed(self, seed, session_factory, settings):
        customer = await seed.customer()
        now = utc_now()
        older = await seed.plan(customer, next_order=now - timedelta(hours=2))
        newer = await seed.plan(customer, next_order=now - timedelta(minutes=5))
        await seed.plan(customer, next_order=now + timedelta(days=1))
        await seed.plan(customer, status="paused", next_order=now - timedelta(days=1))
        await seed.plan(customer, next_text=now - timedelta(days=1))

        flex = RecordingFlex()
        claimed = await make_scheduler(session_factory, settings, flex=flex).schedule_flex_orders()

        assert claimed == [older.id, newer.id]
        assert flex.processed == [(older.id, SCHEDULER_SOURCE), (newer.id, SCHEDULER_SOURCE)]
        assert (await seed.get_plan(older.id)).next_order is None

    async def test_concurrent_ticks_claim_once(self, seed, session_factory, settings):
        customer = await seed.customer()
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        first, second = RecordingFlex(), RecordingFlex()
        results = await asyncio.gather(
            make_scheduler(session_factory, settings, flex=first).schedule_flex_orders(),
            make_scheduler(session_factory, settings, flex=second).schedule_flex_orders(),
        )

        assert sorted(len(claimed) for claimed in results) == [0, 1]
        assert first.processed + second.processed == [(plan.id, SCHEDULER_SOURCE)]

    async def test_second_tick_finds_nothing(self, seed, session_factory, settings):
        customer = await seed.customer()
        await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))
        scheduler = make_scheduler(session_factory, settings)

        assert len(await scheduler.schedule_flex_orders()) == 1
        assert await scheduler.schedule_flex_orders() == []

    async def test_failure_does_not_stop_the_batch(self, seed, session_factory, settings):
        customer = await seed.customer()
        now = utc_now()
        broken = await seed.plan(customer, next_order=now - timedelta(hours=1))
        healthy = await seed.plan(customer, next_order=now - timedelta(minutes=1))

        flex = RecordingFlex(fail_for={broken.id})
        claimed = await make_scheduler(session_factory, settings, flex=flex).schedule_flex_orders()

        assert claimed == [broken.id, healthy.id]
        assert [plan_id for plan_id, _ in flex.processed] == [broken.id, healthy.id]

    async def test_order_error_releases_claim_for_next_tick(self, seed, session_factory, settings):
        customer = await seed.customer()
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        flex = RecordingFlex(fail_for={plan.id}, error=ItemsNotFound(["bar-box"]))
        scheduler = make_scheduler(session_factory, settings, flex=flex)

        assert await scheduler.schedule_flex_orders() == [plan.id]
        released = await seed.get_plan(plan.id)
        assert released.next_order is not None
        assert released.next_text is None

        assert await scheduler.schedule_flex_orders() == [plan.id]
        assert len(flex.processed) == 2

    @pytest.mark.parametrize("error", [ChargeFailed("declined"), RuntimeError("connection reset")])
    async def test_charge_or_unknown_failure_keeps_claim(self, seed, session_factory, settings, error):
        customer = await seed.customer()
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        flex = RecordingFlex(fail_for={plan.id}, error=error)
        scheduler = make_scheduler(session_factory, settings, flex=flex)

        assert await scheduler.schedule_flex_orders() == [plan.id]
        assert (await seed.get_plan(plan.id)).next_order is None
        assert await scheduler.schedule_flex_orders() == []

    async def test_release_skips_plans_changed_meanwhile(self, seed, session_factory, settings):
        customer = await seed.customer()
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        class PausingFlex(RecordingFlex):
            async def process(self, plan_id, source=None):
                async with session_factory() as session, session.begin():
                    await store.update_plan(session, plan_id, status="paused")
                await super().process(plan_id, source)

        flex = PausingFlex(fail_for={plan.id}, error=ItemsNotFound(["bar-box"]))
        await make_scheduler(session_factory, settings, flex=flex).schedule_flex_orders()

        updated = await seed.get_plan(plan.id)
        assert updated.status == "paused"
        assert updated.next_order is None

    async def test_missing_product_is_retried_end_to_end(self, components, seed, gateway):
        customer = await seed.customer()
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        assert await components.scheduler.schedule_flex_orders() == [plan.id]
        assert gateway.calls == []
        assert (await seed.get_plan(plan.id)).next_order is not None

        await seed.product("bar-box", 1000)
        assert await components.scheduler.schedule_flex_orders() == [plan.id]
        updated = await seed.get_plan(plan.id)
        assert updated.total_orders == 1
        assert updated.next_text is not None

    async def test_batch_size_limits_claims(self, seed, session_factory, settings):
        customer = await seed.customer()
        for minutes in (3, 2, 1):
            await seed.plan(customer, next_order=utc_now() - timedelta(minutes=minutes))

        scheduler = make_scheduler(session_factory, settings.model_copy(update={"scheduler_batch_size": 2}))
        assert len(await scheduler.schedule_flex_orders()) == 2
        assert len(await scheduler.schedule_flex_orders()) == 1

    async def test_end_to_end_cycle(self, components, seed, gateway):
        customer = await seed.customer()
        await seed.product("bar-box", 1000)
        plan = await seed.plan(customer, next_order=utc_now() - timedelta(minutes=1))

        claimed = await components.scheduler.schedule_flex_orders()

        assert claimed == [plan.id]
        assert gateway.charges[0]["amount"] == 2000
        updated = await seed.get_plan(plan.id)
        assert updated.total_orders == 1
        assert updated.next_order is None
        assert updated.next_text is not None


class TestTrialConversions:
    async def test_due_trial_customers_are_claimed(self, seed, session_factory, settings):
        now = utc_now()
        due = await seed.customer(customer_type="TrialToFlex", start_flex=now - timedelta(hours=1))
        await seed.customer(customer_type="TrialToFlex", start_flex=now + timedelta(days=1))
        await seed.customer(customer_type="Standard", start_flex=now - timedelta(hours=1))

        trials = RecordingTrials()
        claimed = await make_scheduler(session_factory, settings, trials=trials).schedule_trial_conversions()

        assert claimed == [due.id]
        assert trials.converted == [(due.id, SCHEDULER_SOURCE)]
        assert (await seed.get_customer(due.id)).start_flex is None

    async def test_concurrent_ticks_convert_once(self, seed, session_factory, settings):
        due = await seed.customer(customer_type="TrialToFlex", start_flex=utc_now() - timedelta(hours=1))

        first, second = RecordingTrials(), RecordingTrials()
        await asyncio.gather(
            make_scheduler(session_factory, settings, trials=first).schedule_trial_conversions(),
            make_scheduler(session_factory, settings, trials=second).schedule_trial_conversions(),
        )

        assert first.converted + second.converted == [(due.id, SCHEDULER_SOURCE)]
