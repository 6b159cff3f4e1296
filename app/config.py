from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = ""
    jwt_secret: str = ""
    log_level: str = "INFO"

    dataverse_url: str = ""
    dataverse_tenant_id: str = ""
    dataverse_client_id: str = ""
    dataverse_client_secret: str = ""
    dataverse_authority_url: str = "https://login.microsoftonline.com"
    dataverse_api_version: str = "v9.2"
    dataverse_language_code: int = 1033
    dataverse_timeout_seconds: float = 30.0

    entity_delete_timeout_seconds: float = 300.0
    entity_delete_recheck_seconds: float = 5.0
    entity_settle_seconds: float = 4.0
    relationship_batch_settle_seconds: float = 25.0
    relationship_success_delay_seconds: float = 3.0
    relationship_failure_delay_seconds: float = 5.0


settings = Settings()
