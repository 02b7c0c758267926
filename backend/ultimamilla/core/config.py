"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    db_path: str = "./data/ultimamilla.db"
    idempotency_retention: int = 10000
    # Newest events kept per entity; never below 100
    timeline_retention: int = 1000

    # Auth collaborator
    auth_enabled: bool = False
    # `token:actor:role1|role2` comma-separated entries
    actor_tokens: str = ""
    default_actor: str = "anonymous"
    default_roles: str = "admin"

    # Own fleet detection for carriers without an explicit flag
    own_fleet_rut: str = ""
    own_fleet_name: str = "vivipra"

    # Route numbering
    route_number_prefix: str = "R"
    route_number_timezone: str = "America/Santiago"

    # Delivery evidence
    validate_receiver_rut: bool = True

    def parsed_default_roles(self) -> list[str]:
        return [role.strip() for role in (self.default_roles or "").split("|") if role.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
