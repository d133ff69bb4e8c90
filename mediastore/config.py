from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "mediastore"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./mediastore.db"
    auto_create_tables: bool = True

    storage_backend: str = "local"
    storage_root: str = "./data"
    public_url_prefix: str = "/uploads"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""

    chunk_size_bytes: int = 5 * MIB
    max_file_size_bytes: int = 4 * 1024 * MIB
    max_image_size_bytes: int = 10 * MIB
    max_video_size_bytes: int = 4 * 1024 * MIB
    merge_in_background: bool = True
    merge_workers: int = 2

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 86400
    user_credentials: str = "admin:admin"
    admin_user_ids: str = "admin"

    tracing_enabled: bool = False
    tracing_service_name: str = "mediastore"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True

    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_upload_ttl_seconds: int = 86400

    api_base_url: str = "http://127.0.0.1:8000/api"
    http_timeout_seconds: float | None = None
    upload_chunk_concurrency: int = 3
    upload_poll_interval_seconds: float = 1.0
    upload_poll_max_attempts: int = 30
    md5_read_block_bytes: int = 2 * MIB


settings = Settings()
