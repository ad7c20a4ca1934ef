"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database (production store + named environment stores)
    database_url: str = Field(default="sqlite+aiosqlite:///./data/finance.db", alias="DATABASE_URL")
    env_db_dir: str = Field(default="./data/envs", alias="ENV_DB_DIR")

    def env_database_url(self, env: str) -> str:
        """SQLite URL for a named environment database"""
        return f"sqlite+aiosqlite:///{self.env_database_path(env)}"

    def env_database_path(self, env: str) -> Path:
        return Path(self.env_db_dir) / f"{env}.db"

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Anthropic (AI fallback categorization)
    claude_api_key: Optional[str] = Field(default=None, alias="CLAUDE_API_KEY")
    ai_model: str = Field(default="claude-haiku-4-5-20251001", alias="AI_MODEL")
    ai_max_tokens: int = Field(default=200, alias="AI_MAX_TOKENS")

    # Haiku 4.5 pricing: $1.00/MTok input, $5.00/MTok output
    ai_input_cost_per_mtok: float = Field(default=1.0, alias="AI_INPUT_COST_PER_MTOK")
    ai_output_cost_per_mtok: float = Field(default=5.0, alias="AI_OUTPUT_COST_PER_MTOK")

    ai_max_retries: int = Field(default=5, alias="AI_MAX_RETRIES")
    ai_retry_base_delay: float = Field(default=1.0, alias="AI_RETRY_BASE_DELAY")
    ai_retry_max_jitter: float = Field(default=0.5, alias="AI_RETRY_MAX_JITTER")

    # Notion (external record store)
    notion_api_token: Optional[str] = Field(default=None, alias="NOTION_API_TOKEN")
    notion_balance_sheet_id: Optional[str] = Field(default=None, alias="NOTION_BALANCE_SHEET_ID")
    notion_entities_db_id: Optional[str] = Field(default=None, alias="NOTION_ENTITIES_DB_ID")
    notion_api_url: str = Field(default="https://api.notion.com/v1", alias="NOTION_API_URL")
    notion_version: str = Field(default="2022-06-28", alias="NOTION_VERSION")
    notion_timeout: float = Field(default=30.0, alias="NOTION_TIMEOUT")

    # Import pipeline
    import_write_concurrency: int = Field(default=3, alias="IMPORT_WRITE_CONCURRENCY")
    import_write_delay: float = Field(default=0.4, alias="IMPORT_WRITE_DELAY")
    import_batch_size: int = Field(default=25, alias="IMPORT_BATCH_SIZE")
    checksum_query_chunk: int = Field(default=100, alias="CHECKSUM_QUERY_CHUNK")

    # Matching Rules
    match_min_contains_length: int = Field(default=4, alias="MATCH_MIN_CONTAINS_LENGTH")
    match_confidence_threshold: float = Field(default=0.9, alias="MATCH_CONFIDENCE_THRESHOLD")
    ai_new_entity_confidence: float = Field(default=0.7, alias="AI_NEW_ENTITY_CONFIDENCE")
    ai_known_entity_confidence: float = Field(default=0.85, alias="AI_KNOWN_ENTITY_CONFIDENCE")

    # Progress polling
    progress_retention_seconds: int = Field(default=3600, alias="PROGRESS_RETENTION_SECONDS")

    # Monitoring
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator("environment")
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
