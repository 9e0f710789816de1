"""
Commerce Service — FastAPI エントリーポイント

定期トリガー (スケジューラ) と、オペレーター向けの Flex プラン・トライアル・
注文の操作コマンドを HTTP で公開する。
任意の注文を作るエンドポイントは持たない。
"""

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import errors
from .components import Components, build_components
from .config import Settings
from .customers import credit_customer
from .gateway import FakeGateway, PaymentGateway, StripeGateway
from .models import Discount
from .notifications import Notifier
from .notifications.fakes import FakeAnalyticsClient, FakeChatClient, FakeMarketingClient
from .notifications.google_analytics import GoogleAnalyticsClient
from .notifications.klaviyo import KlaviyoClient
from .notifications.redis_publisher import RedisEventPublisher
from .notifications.slack import SlackClient
from .tables import create_schema
from .utils.logging import configure_logging

logger = structlog.get_logger(__name__)

ERROR_STATUS: dict[type[errors.CommerceError], int] = {
    errors.CustomerNotFound: 404,
    errors.ProductNotFound: 404,
    errors.OrderNotFound: 404,
    errors.PlanNotFound: 404,
    errors.OrderNotCancelable: 409,
    errors.PlanNotResumable: 409,
    errors.CreditUnavailable: 409,
    errors.RefundExceedsOrder: 409,
    errors.ChargeFailed: 402,
    errors.RefundFailed: 502,
    errors.PaymentProfileMissing: 422,
    errors.InvalidQuantity: 422,
    errors.MalformedDiscount: 422,
    errors.TrialConversionError: 422,
}


def status_for(exc: errors.CommerceError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def build_gateway(settings: Settings, http: httpx.AsyncClient) -> PaymentGateway:
    if settings.stripe_secret_key:
        return StripeGateway(http, settings.stripe_secret_key, settings.stripe_api_base_url)
    if not settings.use_fake_gateway:
        raise RuntimeError("STRIPE_SECRET_KEY is not set; set USE_FAKE_GATEWAY=true to run with the fake gateway")
    logger.warning("stripe_not_configured", gateway="fake")
    return FakeGateway()


def build_notifier(settings: Settings, redis: aioredis.Redis, http: httpx.AsyncClient) -> Notifier:
    marketing = (
        KlaviyoClient(
            http,
            settings.klaviyo_key,
            settings.klaviyo_api_base_url,
            enabled=settings.klaviyo_enabled,
            bypass_email_suffix=settings.klaviyo_bypass_email_suffix,
        )
        if settings.klaviyo_key
        else FakeMarketingClient()
    )
    chat = (
        SlackClient(http, settings.slack_api_token, settings.slack_api_base_url)
        if settings.slack_api_token
        else FakeChatClient()
    )
    analytics = (
        GoogleAnalyticsClient(http, settings.google_analytics_id)
        if settings.google_analytics_id
        else FakeAnalyticsClient()
    )
    return Notifier(RedisEventPublisher(redis, settings.events_channel), marketing, chat, analytics)


# ── Request Models ───────────────────────────────


class ProcessPlanRequest(BaseModel):
    source: str | None = None


class SkipRequest(BaseModel):
    duration_days: int | None = None


class CreatePlanRequest(BaseModel):
    customer_id: str
    items: list[dict]
    discounts: list[Discount] = Field(default_factory=list)
    source: str | None = None


class ConvertTrialRequest(BaseModel):
    source: str | None = None


class RefundRequest(BaseModel):
    reason: str = ""
    amount: int = Field(default=0, ge=0)


class CancelOrderRequest(BaseModel):
    reason: str = "Canceled Order"


class CreditRequest(BaseModel):
    credit: int
    source: str | None = None


def get_components(request: Request) -> Components:
    return request.app.state.commerce


def create_app(settings: Settings | None = None, components: Components | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if components is not None:
            app.state.commerce = components
            yield
            await components.notifier.drain()
            return

        configure_logging(settings.log_level, settings.log_json)
        http = httpx.AsyncClient(timeout=30.0)
        # 決済設定の不備は DB や Redis に触る前に起動失敗にする
        gateway = build_gateway(settings, http)
        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

        app.state.commerce = build_components(
            settings,
            async_session,
            gateway,
            build_notifier(settings, redis_pool, http),
        )
        logger.info("commerce_service_started")
        yield
        await app.state.commerce.notifier.drain()
        await http.aclose()
        await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Commerce Service", lifespan=lifespan)

    @app.exception_handler(errors.CommerceError)
    async def commerce_error_handler(request: Request, exc: errors.CommerceError):
        status = status_for(exc)
        if status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.code, key=exc.key, detail=str(exc))
        return JSONResponse(status_code=status, content={"error": exc.code, "key": exc.key, "detail": str(exc)})

    # ── Scheduler ────────────────────────────────

    @app.post("/scheduler/flex-orders")
    async def schedule_flex_orders(c: Components = Depends(get_components)):
        """期限の来た Flex プランを確保して課金する"""
        return {"claimed": await c.scheduler.schedule_flex_orders()}

    @app.post("/scheduler/trial-conversions")
    async def schedule_trial_conversions(c: Components = Depends(get_components)):
        """期限の来たトライアル顧客を Flex に移行する"""
        return {"claimed": await c.scheduler.schedule_trial_conversions()}

    # ── Flex Plans ───────────────────────────────

    @app.post("/flex/plans")
    async def create_plan(req: CreatePlanRequest, c: Components = Depends(get_components)):
        plan = await c.flex.create(req.customer_id, req.items, req.discounts, req.source)
        return plan.model_dump(mode="json")

    @app.post("/flex/plans/{plan_id}/process")
    async def process_plan(plan_id: str, req: ProcessPlanRequest, c: Components = Depends(get_components)):
        order = await c.flex.process(plan_id, source=req.source)
        return order.model_dump(mode="json")

    @app.post("/flex/plans/{plan_id}/pause")
    async def pause_plan(plan_id: str, c: Components = Depends(get_components)):
        plan = await c.flex.pause(plan_id)
        return plan.model_dump(mode="json")

    @app.post("/flex/plans/{plan_id}/resume")
    async def resume_plan(plan_id: str, c: Components = Depends(get_components)):
        plan = await c.flex.resume(plan_id)
        return plan.model_dump(mode="json")

    @app.post("/flex/plans/{plan_id}/skip")
    async def skip_plan(plan_id: str, req: SkipRequest, c: Components = Depends(get_components)):
        plan = await c.flex.skip(plan_id, req.duration_days)
        return plan.model_dump(mode="json")

    @app.post("/flex/plans/{plan_id}/cancel")
    async def cancel_plan(plan_id: str, c: Components = Depends(get_components)):
        await c.flex.cancel(plan_id)
        return {"plan_id": plan_id, "status": "canceled"}

    # ── Trials ───────────────────────────────────

    @app.post("/trials/{customer_id}/convert")
    async def convert_trial(customer_id: str, req: ConvertTrialRequest, c: Components = Depends(get_components)):
        plan = await c.trials.convert(customer_id, source=req.source)
        return plan.model_dump(mode="json")

    @app.post("/trials/{customer_id}/skip")
    async def skip_trial(customer_id: str, req: SkipRequest, c: Components = Depends(get_components)):
        days = req.duration_days if req.duration_days is not None else 28
        customer = await c.trials.skip(customer_id, days)
        return customer.model_dump(mode="json")

    @app.post("/trials/{customer_id}/cancel")
    async def cancel_trial(customer_id: str, c: Components = Depends(get_components)):
        customer = await c.trials.cancel(customer_id)
        return customer.model_dump(mode="json")

    # ── Orders / Customers ───────────────────────

    @app.post("/orders/{invoice_number}/refund")
    async def refund_order(invoice_number: str, req: RefundRequest, c: Components = Depends(get_components)):
        refund = await c.reversals.refund(invoice_number, req.reason, req.amount)
        return {"invoice_number": invoice_number, "refund": refund.model_dump(mode="json") if refund else None}

    @app.post("/orders/{invoice_number}/cancel")
    async def cancel_order(invoice_number: str, req: CancelOrderRequest, c: Components = Depends(get_components)):
        refund = await c.reversals.cancel(invoice_number, req.reason)
        return {
            "invoice_number": invoice_number,
            "status": "Canceled",
            "refund": refund.model_dump(mode="json") if refund else None,
        }

    @app.post("/customers/{customer_id}/credit")
    async def adjust_credit(customer_id: str, req: CreditRequest, c: Components = Depends(get_components)):
        balance = await credit_customer(c.session_factory, c.notifier, customer_id, req.credit, req.source)
        return {"customer_id": customer_id, "credit": balance}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "commerce-service"}

    return app


app = create_app()
