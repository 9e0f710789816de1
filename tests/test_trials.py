"""Trial to Flex conversion and its failure policy."""

from datetime import timedelta

import pytest

from commerce.errors import ChargeFailed, CustomerNotFound, ItemsNotFound, TrialConversionError
from commerce.models import Customer, utc_now
from commerce.trials import VARIETY_SAMPLER, VARIETY_SAMPLER_SKUS, conversion_items


def trial_customer(seed, **overrides):
    data = {
        "customer_type": "TrialToFlex",
        "start_flex": utc_now() - timedelta(hours=1),
        "flex_default": [{"sku": "bar-box", "quantity": 2}],
    }
    data.update(overrides)
    return seed.customer(**data)


class TestConversionItems:
    def test_uses_flex_default(self):
        customer = Customer(id="c1", flex_default=[{"sku": "bar-box", "quantity": 2}, {"id": "gum", "quantity": 1}])
        assert conversion_items(customer) == [{"sku": "bar-box", "quantity": 2}, {"sku": "gum", "quantity": 1}]

    def test_variety_sampler_expands(self):
        customer = Customer(id="c1", flex_default=[{"name": VARIETY_SAMPLER, "sku": "variety", "quantity": 1}])
        assert [item["sku"] for item in conversion_items(customer)] == list(VARIETY_SAMPLER_SKUS)

    def test_missing_default(self):
        with pytest.raises(TrialConversionError, match="not configured"):
            conversion_items(Customer(id="c1"))

    def test_malformed_default(self):
        with pytest.raises(TrialConversionError, match="Malformed"):
            conversion_items(Customer(id="c1", flex_default=[{"sku": "bar-box"}]))


class TestConvert:
    async def test_successful_conversion(self, components, seed, gateway, sinks, notifier):
        customer = await trial_customer(seed, failed_start=1, rushed=True)
        await seed.product("bar-box", 1000)

        plan = await components.trials.convert(customer.id, source="CRM")
        await notifier.drain()

        assert plan.status == "active"
        assert plan.customer_id == customer.id
        assert plan.total_price == 2000
        assert plan.discounts == []
        assert [o.invoice_number for o in plan.orders] == ["VRB1001"]
        assert gateway.charges[0]["amount"] == 2000

        order = await seed.get_order("VRB1001")
        assert order.shipping.ship_date.date() == order.completion_date.date()

        refreshed = await seed.get_customer(customer.id)
        assert refreshed.converted_flex is not None
        assert refreshed.start_flex is None
        assert refreshed.rushed is False

        assert {"trial/converted", "flex/created"} <= set(sinks.events.names())
        assert "Flex Converted" in sinks.marketing.event_names()

    async def test_first_failure_schedules_retry(self, components, seed, gateway):
        customer = await trial_customer(seed, rushed=True)
        await seed.product("bar-box", 1000)
        gateway.configure(should_succeed=False)

        with pytest.raises(ChargeFailed):
            await components.trials.convert(customer.id)

        refreshed = await seed.get_customer(customer.id)
        assert refreshed.failed_start == 1
        assert refreshed.rushed is False
        assert refreshed.no_followup is None
        assert refreshed.start_flex.hour == 14
        assert refreshed.start_flex.date() == (utc_now() + timedelta(days=2)).date()

    async def test_second_failure_stops_followup(self, components, seed, gateway):
        customer = await trial_customer(seed, failed_start=1, flex_followup=utc_now())
        await seed.product("bar-box", 1000)
        gateway.configure(should_succeed=False)

        with pytest.raises(ChargeFailed):
            await components.trials.convert(customer.id)

        refreshed = await seed.get_customer(customer.id)
        assert refreshed.failed_start == 2
        assert refreshed.no_followup is not None
        assert refreshed.start_flex is None
        assert refreshed.flex_followup is None

    async def test_other_failure_retries_without_counting(self, components, seed, gateway):
        customer = await trial_customer(seed, rushed=True)

        with pytest.raises(ItemsNotFound):
            await components.trials.convert(customer.id)

        refreshed = await seed.get_customer(customer.id)
        assert refreshed.failed_start == 0
        assert refreshed.rushed is False
        assert refreshed.start_flex.date() == (utc_now() + timedelta(days=2)).date()
        assert gateway.calls == []

    async def test_missing_flex_default(self, components, seed, gateway):
        customer = await trial_customer(seed, flex_default=[])
        with pytest.raises(TrialConversionError):
            await components.trials.convert(customer.id)
        assert gateway.calls == []

    async def test_unknown_customer(self, components):
        with pytest.raises(CustomerNotFound):
            await components.trials.convert("nobody")

    async def test_variety_sampler_conversion(self, components, seed):
        customer = await trial_customer(seed, flex_default=[{"name": VARIETY_SAMPLER, "quantity": 1}])
        for sku in VARIETY_SAMPLER_SKUS:
            await seed.product(sku, 500)

        plan = await components.trials.convert(customer.id)

        assert [item["sku"] for item in plan.items] == list(VARIETY_SAMPLER_SKUS)
        assert plan.total_price == 2000


class TestSkipAndCancel:
    async def test_skip(self, components, seed, sinks, notifier):
        customer = await trial_customer(seed, no_followup=utc_now())

        skipped = await components.trials.skip(customer.id, 14)
        await notifier.drain()

        assert skipped.start_flex is None
        assert skipped.no_followup is None
        assert skipped.flex_followup.date() == (utc_now() + timedelta(days=14)).date()
        assert sinks.events.published[-1].name == "trial/skipped"
        assert sinks.events.published[-1].properties == {"daysSkipped": 14}

    async def test_skip_unknown_customer(self, components):
        with pytest.raises(CustomerNotFound):
            await components.trials.skip("nobody")

    async def test_cancel(self, components, seed, sinks, notifier):
        customer = await trial_customer(seed)

        canceled = await components.trials.cancel(customer.id)
        await notifier.drain()

        assert canceled.start_flex is None
        assert canceled.no_followup is not None
        assert sinks.events.names() == ["trial/canceled"]
        assert sinks.marketing.event_names() == ["Trial Canceled"]
        assert sinks.marketing.identified == [
            {"email": "jamie@example.com", "properties": {"flexStatus": "canceledTrial"}}
        ]
