"""
Commerce Service — 設定

環境変数から一度だけ読み込み、各コンポーネントのコンストラクタに渡す。
グローバルなコンテキストは持たない。
"""

import os

from pydantic import BaseModel, Field


class AutoPromotion(BaseModel):
    """Campaign discount applied whenever its trigger sku is in the cart."""

    code: str
    sku: str
    rate: float


def _csv(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./commerce.db"
    redis_url: str = "redis://localhost:6379"
    events_channel: str = "commerce_events"

    # ── Pricing ──────────────────────────────────
    minimum_order_total: int = 50
    default_shipping_price: int = 495
    auto_discounts: frozenset[str] = frozenset({"HOLIDAYBUNDLEPROMO"})
    non_discountable_skus: frozenset[str] = frozenset()
    trial_starter_sku: str = "sampler-pouch"
    starter_kit_sku: str = "starter-kit"
    auto_promotions: list[AutoPromotion] = Field(
        default_factory=lambda: [AutoPromotion(code="PSLFALL2021", sku="ps-pouch", rate=0.2)]
    )

    # ── Flex / trial cadence ─────────────────────
    flex_cadence_days: int = 28
    flex_failure_threshold: int = 4
    flex_retry_backoff_days: int = 3
    trial_failure_threshold: int = 2
    trial_retry_days: int = 2
    reminder_hour: int = 14
    scheduler_batch_size: int = 20

    # ── External services ────────────────────────
    stripe_secret_key: str | None = None
    stripe_api_base_url: str = "https://api.stripe.com/v1"
    # ローカル開発用。true のときだけ STRIPE_SECRET_KEY なしで FakeGateway を使う
    use_fake_gateway: bool = False
    klaviyo_key: str | None = None
    klaviyo_api_base_url: str = "https://a.klaviyo.com/api/"
    klaviyo_enabled: bool = False
    klaviyo_bypass_email_suffix: str = "verbenergy.co"
    slack_api_token: str | None = None
    slack_api_base_url: str = "https://slack.com/api"
    slack_orders_channel: str | None = None
    google_analytics_id: str | None = None

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: dict = {}

        def put(name: str, key: str, convert=str) -> None:
            raw = env.get(name)
            if raw is not None and raw != "":
                values[key] = convert(raw)

        put("DATABASE_URL", "database_url")
        put("REDIS_URL", "redis_url")
        put("EVENTS_CHANNEL", "events_channel")
        put("MINIMUM_ORDER_TOTAL", "minimum_order_total", int)
        put("DEFAULT_SHIPPING_PRICE", "default_shipping_price", int)
        put("AUTO_DISCOUNTS", "auto_discounts", _csv)
        put("NON_DISCOUNTABLE_SKUS", "non_discountable_skus", _csv)
        put("FLEX_CADENCE_DAYS", "flex_cadence_days", int)
        put("FLEX_FAILURE_THRESHOLD", "flex_failure_threshold", int)
        put("FLEX_RETRY_BACKOFF_DAYS", "flex_retry_backoff_days", int)
        put("TRIAL_FAILURE_THRESHOLD", "trial_failure_threshold", int)
        put("TRIAL_RETRY_DAYS", "trial_retry_days", int)
        put("REMINDER_HOUR", "reminder_hour", int)
        put("SCHEDULER_BATCH_SIZE", "scheduler_batch_size", int)
        put("STRIPE_SECRET_KEY", "stripe_secret_key")
        put("STRIPE_API_BASE_URL", "stripe_api_base_url")
        put("USE_FAKE_GATEWAY", "use_fake_gateway", _flag)
        put("KLAVIYO_KEY", "klaviyo_key")
        put("KLAVIYO_API_BASE_URL", "klaviyo_api_base_url")
        put("KLAVIYO_ENABLED", "klaviyo_enabled", _flag)
        put("SLACK_API_TOKEN", "slack_api_token")
        put("SLACK_API_BASE_URL", "slack_api_base_url")
        put("SLACK_CHANNEL_ORDERS", "slack_orders_channel")
        put("GOOGLE_ANALYTICS_ID", "google_analytics_id")
        put("LOG_LEVEL", "log_level")
        put("LOG_JSON", "log_json", _flag)
        return cls(**values)


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}
