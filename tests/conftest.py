"""Shared fixtures: a file-backed SQLite store per test, fake gateway and sinks."""

from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from commerce import store
from commerce.components import build_components
from commerce.config import Settings
from commerce.gateway import FakeGateway
from commerce.models import Customer, Discount, FlexPlan, OrderRecord, Price, Product, utc_now
from commerce.notifications import Notifier
from commerce.notifications.fakes import (
    FakeAnalyticsClient,
    FakeChatClient,
    FakeEventPublisher,
    FakeMarketingClient,
)
from commerce.tables import create_schema


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://", slack_orders_channel="C-ORDERS")


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/commerce.db")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sinks():
    return SimpleNamespace(
        events=FakeEventPublisher(),
        marketing=FakeMarketingClient(),
        chat=FakeChatClient(),
        analytics=FakeAnalyticsClient(),
    )


@pytest.fixture
def notifier(sinks):
    return Notifier(sinks.events, sinks.marketing, sinks.chat, sinks.analytics)


@pytest.fixture
def components(settings, session_factory, gateway, notifier):
    return build_components(settings, session_factory, gateway, notifier)


# ── Data helpers ─────────────────────────────────


class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def customer(self, **overrides) -> Customer:
        data = {
            "id": str(uuid4()),
            "email": "jamie@example.com",
            "first_name": "Jamie",
            "last_name": "Doe",
            "phone": "555-0100",
            "payment_token": "cus_test",
            "shipping_address": {"address1": "1 Main St", "city": "Austin", "state": "TX", "zip": "78701"},
        }
        data.update(overrides)
        customer = Customer(**data)
        async with self.session_factory() as session, session.begin():
            await store.insert_customer(session, customer)
        return customer

    async def product(self, sku: str, value=1000, **overrides) -> Product:
        price = overrides.pop("price", None) or Price(value=value)
        product = Product(id=str(uuid4()), sku=sku, name=sku.replace("-", " ").title(), price=price, **overrides)
        async with self.session_factory() as session, session.begin():
            await store.insert_product(session, product)
        return product

    async def plan(self, customer: Customer, **overrides) -> FlexPlan:
        data = {
            "id": str(uuid4()),
            "customer_id": customer.id,
            "email": customer.email,
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "items": [{"sku": "bar-box", "quantity": 2}],
            "shipping_address": customer.shipping_address,
            "total_price": 2000,
            "status": "active",
        }
        data.update(overrides)
        plan = FlexPlan(**data)
        async with self.session_factory() as session, session.begin():
            await store.insert_plan(session, plan)
        return plan

    async def get_customer(self, customer_id: str) -> Customer:
        async with self.session_factory() as session:
            return await store.get_customer(session, customer_id)

    async def get_plan(self, plan_id: str) -> FlexPlan | None:
        async with self.session_factory() as session:
            return await store.get_plan(session, plan_id)

    async def get_order(self, invoice_number: str):
        async with self.session_factory() as session:
            return await store.get_order(session, invoice_number)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


def flex_discount(code="FLEX10", value=10.0, discount_type="mult", flex=True) -> Discount:
    return Discount(code=code, discount_type=discount_type, value=value, flex=flex)


def history(*invoices: str) -> list[OrderRecord]:
    return [OrderRecord(invoice_number=invoice, completion_date=utc_now()) for invoice in invoices]
