import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # Payment provider
    PAYMENT_PROVIDER_BASE_URL: str = os.getenv("PAYMENT_PROVIDER_BASE_URL", "https://api.razorpay.com/v1")
    PAYMENT_PROVIDER_KEY_ID: str = os.getenv("PAYMENT_PROVIDER_KEY_ID", "")
    PAYMENT_PROVIDER_KEY_SECRET: str = os.getenv("PAYMENT_PROVIDER_KEY_SECRET", "")
    PAYMENT_WEBHOOK_SECRET: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("PAYMENT_PROVIDER_TIMEOUT_SECONDS", "10"))

    # Abandoned orders
    ABANDONED_ORDER_THRESHOLD_MINUTES: int = int(os.getenv("ABANDONED_ORDER_THRESHOLD_MINUTES", "30"))
    ABANDONED_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("ABANDONED_SWEEP_INTERVAL_SECONDS", "900"))

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka.kafka.svc.cluster.local:9092")
    KAFKA_ORDER_EVENTS_TOPIC: str = os.getenv("KAFKA_ORDER_EVENTS_TOPIC", "storefront.order-status.events")

    @property
    def DATABASE_URL(self) -> str:
        """Асинхронный URL для приложения"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Синхронный URL для Alembic"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")


settings = Settings()
