import os


def _flag(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class BaseConfig:
    JSON_SORT_KEYS = False
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "*")
    RATELIMIT_STORAGE_URL = os.getenv("RATELIMIT_STORAGE_URL", "memory://")
    PAYMENT_LIMIT_PER_IP = os.getenv("PAYMENT_LIMIT_PER_IP", "10 per 10 minutes")
    CART_LIMIT_PER_IP = os.getenv("CART_LIMIT_PER_IP", "120 per minute")
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-insecure-jwt-key")
    ACCESS_TOKEN_LIFETIME_MIN = int(os.getenv("ACCESS_TOKEN_LIFETIME_MIN", 60))

    # Payment gateway (MercadoPago)
    MP_ACCESS_TOKEN = os.getenv("MP_ACCESS_TOKEN", "")
    MP_API_BASE_URL = os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com")
    MP_TIMEOUT_SECONDS = float(os.getenv("MP_TIMEOUT_SECONDS", 15))
    MP_WEBHOOK_SECRET = os.getenv("MP_WEBHOOK_SECRET", "")
    PAYMENT_WEBHOOK_ALLOW_UNSIGNED = _flag("PAYMENT_WEBHOOK_ALLOW_UNSIGNED")

    ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "RMM")
    STORE_NAME = os.getenv("STORE_NAME", "Retrommerce")

    OTEL_ENABLED = _flag("OTEL_ENABLED")
    OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "retromarket-checkout")
    OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318/v1/traces")


class DevelopmentConfig(BaseConfig):
    ENV_NAME = "development"
    DEBUG = True
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-insecure-key")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///dev.db")


class TestingConfig(BaseConfig):
    ENV_NAME = "testing"
    TESTING = True
    SECRET_KEY = "test-key"
    JWT_SECRET = "test-jwt-secret"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    RATELIMIT_ENABLED = False
    MP_ACCESS_TOKEN = "TEST-access-token"
    MP_WEBHOOK_SECRET = "test-webhook-secret"
    OTEL_ENABLED = False


class ProductionConfig(BaseConfig):
    ENV_NAME = "production"
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
    # Never accept unsigned webhooks in production
    PAYMENT_WEBHOOK_ALLOW_UNSIGNED = False

    REQUIRED_ENV = ("SECRET_KEY", "DATABASE_URL", "JWT_SECRET", "MP_ACCESS_TOKEN", "MP_WEBHOOK_SECRET")

    @classmethod
    def validate(cls):
        missing = [name for name in cls.REQUIRED_ENV if not os.getenv(name)]
        if missing:
            raise RuntimeError(
                f"Missing required env vars in production: {', '.join(missing)}"
            )


def get_config_class():
    env = os.getenv("APP_ENV", "development").lower()
    if env == "production":
        ProductionConfig.validate()
        return ProductionConfig
    if env == "testing":
        return TestingConfig
    return DevelopmentConfig
