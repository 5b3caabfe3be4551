from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Grantforge API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    aws_region: str = "us-east-1"
    # Proposal generation needs the large output budget; detection calls go to the lite model.
    bedrock_model_id: str = "amazon.nova-pro-v1:0"
    bedrock_lite_model_id: str = "amazon.nova-lite-v1:0"
    agent_temperature: float = 0.2
    agent_max_tokens: int = 8192

    # MVP default is sqlite; the store only needs get/set/delete and prefix scans.
    database_url: str = "sqlite:///./grantforge.db"
    storage_backend: str = "local"  # local|s3
    storage_root: str = "data/objects"
    s3_bucket: str = "grantforge-dev"
    s3_prefix: str = "grantforge"
    max_upload_file_bytes: int = 20 * 1024 * 1024

    default_target_budget: int = 250_000
    min_target_budget: int = 1_000
    grounding_top_k_generate: int = 5
    grounding_top_k_edit: int = 3

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
