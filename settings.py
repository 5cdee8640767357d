from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod")
    )

    openrouter_api_key: Optional[str] = None

    # Off for local dev: every request runs as a default user on an unlimited plan
    auth_billing_enabled: bool = False

    # Cognito Settings (Optional for local dev)
    cognito_user_pool_id: Optional[str] = None
    cognito_app_client_id: Optional[str] = None
    cognito_domain: Optional[str] = None
    aws_region: Optional[str] = None

    # Stripe billing settings
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id_pro: Optional[str] = None

    # Number of questions a user on the free plan may create
    free_question_limit: int = 5

    # Tag cache for the question/job info read models
    cache_enabled: bool = True
    cache_max_entries: int = 1024

    # Where unauthenticated page requests get redirected
    sign_in_url: str = "/sign-in"

    # Application base URL (for constructing callback URLs etc.)
    app_base_url: str = "http://localhost:8000"  # Default for local dev


@lru_cache()
def get_settings() -> Settings:
    return Settings()
