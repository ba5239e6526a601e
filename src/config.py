from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    internal_scheduler_secret: str | None = None
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0
    realtime_publish_url: str | None = None  # push relay; unset disables publishing
    realtime_publish_bearer_token: str | None = None
    realtime_publish_timeout_seconds: float = 2.0
    app_base_url: str = "https://localhost"  # public https origin the remote calls back
    fic_api_base_url: str = "https://api-v2.fattureincloud.it"
    fic_api_timeout_seconds: float = 12.0
    fic_webhook_signature_header: str = "X-Fic-Signature"
    fic_webhook_public_key: str | None = None  # base64-encoded PEM (ES256)
    fic_webhook_jwt_issuer: str = "https://api-v2.fattureincloud.it"
    fic_webhook_jwt_mode: str = "advisory"  # advisory | enforce
    fic_subscription_renewal_lead_days: int = 15
    fic_verification_retry_min_interval_minutes: int = 10
    fic_verification_max_attempts: int = 5
    fic_webhook_replay_max_events_per_run: int = 200

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
