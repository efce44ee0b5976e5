from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str
    supabase_service_role_key: str
    environment: str = "production"  # production | staging | development
    internal_api_secret: str | None = None
    meta_graph_api_base: str = "https://graph.facebook.com"
    meta_graph_api_version: str = "v22.0"
    meta_app_secret: str | None = None
    meta_app_secret_2: str | None = None
    meta_verify_token: str | None = None
    meta_skip_signature_verify: bool = False
    d360_api_base: str = "https://waba-v2.360dialog.io"
    d360_webhook_basic_user: str | None = None
    d360_webhook_basic_pass: str | None = None
    webhook_debug_token: str | None = None
    webhook_ring_size: int = 200
    webhook_debug_rate_limit_per_minute: int = 30
    webhook_worker_count: int = 4
    webhook_queue_size: int = 500
    provider_timeout_seconds: float = 30.0
    bulk_default_concurrency: int = 10
    bulk_default_max_attempts: int = 4
    bulk_retry_base_delay_seconds: float = 0.25
    bulk_retry_max_delay_seconds: float = 2.0
    ledger_write_attempts: int = 3
    ledger_cas_attempts: int = 5
    sync_dispatch_max_recipients: int = 50
    job_batch_size: int = 50
    job_batch_pause_seconds: float = 1.0
    job_worker_count: int = 2
    job_queue_size: int = 20
    duplicate_window_seconds: int = 300
    notification_queue_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
