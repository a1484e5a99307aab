from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./ledgerly.db"
    secret_key: str = "ledgerly-dev-secret-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # "production" talks to live provider APIs, anything else uses sandboxes
    environment: str = "development"
    frontend_url: str = "http://localhost:3000"

    # TrueLayer (UK & European banks)
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = ""

    # SIBS API Market (Portuguese banks), mTLS client certificate
    sibs_client_id: str = ""
    sibs_client_secret: str = ""
    sibs_redirect_uri: str = ""
    sibs_certificate_path: str = "certificates/sibs.crt"
    sibs_private_key_path: str = "certificates/sibs.key"

    # Banking flow and sync behaviour
    banking_session_ttl_minutes: int = 30
    provider_timeout_seconds: float = 30.0
    sync_failure_policy: str = "abort"
    sync_lookback_days: int = 90

    # Stripe billing
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_pro: str = "price_pro"
    stripe_price_premium: str = "price_premium"
    stripe_timeout_seconds: int = 20

    class Config:
        env_file = ".env"

    @property
    def is_sandbox(self) -> bool:
        return self.environment != "production"


@lru_cache()
def get_settings():
    return Settings()
