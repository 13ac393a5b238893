"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    environment: str = "production"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Push delivery gateway (Firebase Cloud Messaging).
    firebase_project_id: str = ""
    firebase_credentials_path: str = ""
    push_send_timeout_seconds: int = 10
    push_send_concurrency: int = 4
    push_max_tokens_per_user: int = 10
    push_token_min_length: int = 100
    push_token_max_length: int = 500
    push_token_extended_charset: bool = False
    push_allow_test_tokens: bool | None = None
    push_token_cache_ttl_seconds: int = 604800
    push_default_channel_id: str = "fcm_default_channel"
    push_default_sound: str = "default"
    push_default_icon: str = "notification_icon"
    push_default_color: str = "#FF0000"
    push_default_click_action: str = "FLUTTER_NOTIFICATION_CLICK"

    # Notification retry scheduler.
    notification_retry_max_attempts: int = 3
    notification_retry_window_hours: int = 24
    notification_retry_interval_seconds: int = 300

    # Durable job queue.
    job_poll_interval_seconds: float = 1.0
    job_batch_size: int = 20
    job_processing_timeout_seconds: int = 300

    # Fiscal authority (VFD) + archive.
    vfd_sandbox: bool = True
    vfd_base_url: str = ""
    vfd_api_key: str = ""
    vfd_tin: str = ""
    vfd_cert_path: str = ""
    vfd_timeout_seconds: float = 30.0
    vfd_archive_enabled: bool = False
    vfd_archive_endpoint: str = ""
    vfd_archive_api_key: str = ""
    vfd_archive_verify_ssl: bool = True
    vfd_archive_delay_seconds: int = 60
    vfd_receipt_sms_enabled: bool = True

    # SMS providers; `sms_default_provider` picks the active adapter.
    sms_default_provider: str = ""
    mobishastra_url: str = "https://mshastra.com/sendurlcomma.aspx"
    mobishastra_user: str = ""
    mobishastra_password: str = ""
    mobishastra_sender_id: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def test_tokens_allowed(self) -> bool:
        if self.push_allow_test_tokens is not None:
            return self.push_allow_test_tokens
        return self.environment in {"local", "development", "staging", "testing"}


settings = CommonSettings()
