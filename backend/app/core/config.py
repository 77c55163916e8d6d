from decimal import Decimal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Marketplace Order Service"
    API_PREFIX: str = "/api"

    POSTGRES_SERVER: str
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    # Redis Configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Redis Cache TTLs (seconds)
    PRINCIPAL_CACHE_TTL: int = 300  # 5 minutes
    PROCESSED_EVENT_TTL: int = 604800  # 7 days

    # Kafka Configuration
    KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
    KAFKA_CONSUMER_GROUP_ID: str = "marketplace-orders"

    # Kafka Topics
    KAFKA_TOPIC_ORDER_CREATED: str = "order.created"
    KAFKA_TOPIC_ORDER_STATUS_CHANGED: str = "order.status_changed"
    KAFKA_TOPIC_ORDER_CANCELLED: str = "order.cancelled"
    KAFKA_TOPIC_DISPUTE_EVENTS: str = "dispute.events"
    KAFKA_TOPIC_ESCROW_EVENTS: str = "escrow.events"

    # Pricing
    TAX_RATE: Decimal = Decimal("0.10")
    COMMISSION_RATE: Decimal = Decimal("0.10")
    SHIPPING_POLICY: str = "flat_rate"  # flat_rate or free
    FLAT_SHIPPING: Decimal = Decimal("15.00")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("100.00")
    CURRENCY: str = "USD"
    USD_TO_MINOR_UNIT_SCALE: int = 100
    USD_TO_INR_RATE: Decimal = Decimal("84")

    # Razorpay
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"

    # PayPal
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"

    # Shipment tracking (17track)
    TRACK17_API_KEY: str = ""
    TRACK17_API_URL: str = "https://api.17track.net/track/v2.2"
    TRACK17_REGISTER_INTERVAL_SECONDS: float = 0.5
    TRACKING_REFRESH_INTERVAL: int = 300  # Client polling cadence while shipped
    TRACKING_PROCESSOR_INTERVAL: int = 60  # How often the refresher looks for stale slices
    TRACKING_PROCESSOR_BATCH_SIZE: int = 50

    # Escrow signing relay (JSON-RPC)
    ESCROW_RPC_URL: str = ""
    ESCROW_SIGNER_KEY: str = ""

    # External Services
    AUTH_SERVICE_URL: str = "http://localhost:8001"

    # Outbound HTTP
    OUTBOUND_TIMEOUT_SECONDS: float = 10.0
    OUTBOUND_RETRY_ATTEMPTS: int = 2  # First call plus one retry

    # Dispute attachments
    UPLOAD_DIR: str = "uploads/disputes"
    DISPUTE_MAX_IMAGES: int = 5
    DISPUTE_IMAGE_MAX_BYTES: int = 5 * 1024 * 1024
    DISPUTE_IMAGE_TTL_DAYS: int = 7

    # Metrics Configuration
    ENABLE_METRICS: bool = True
    METRICS_PORT: int = 8000

    # Outbox Worker Configuration
    OUTBOX_BATCH_SIZE: int = 100  # Maximum events to process per batch
    OUTBOX_POLL_INTERVAL_SECONDS: int = 1  # How often to check for new events
    OUTBOX_ERROR_BACKOFF_SECONDS: int = 5  # Sleep duration after errors
    OUTBOX_MAX_RETRY_ATTEMPTS: int = 5  # Max attempts before flagging for manual intervention
    OUTBOX_ERROR_MESSAGE_MAX_LENGTH: int = 500  # Max characters to store in last_error field

    # Logging Configuration
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_FORMAT: str = "json"  # json or console (console for dev, json for prod)
    ENVIRONMENT: str = "development"  # development, staging, production
    SERVICE_NAME: str = "marketplace-orders"
    SERVICE_VERSION: str = "v1.0.0"  # Deployment version (override with git SHA in prod)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        return f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def REDIS_URL(self) -> str:
        """Construct Redis connection URL"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()  # type: ignore
