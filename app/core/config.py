from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    DATABASE_ECHO: bool = False
    SECRET_KEY: str
    ALGORITHM: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int

    # SQL gate: grammar tables and execution bounds
    SQL_MAX_LIMIT: int = 200
    SQL_STATEMENT_TIMEOUT_MS: int = 3000
    SQL_TENANT_RELATIONS: List[str] = ["entries", "categories", "forecasts", "users"]
    SQL_TENANT_COLUMN: str = "user_id"
    # Relations whose tenant column differs from SQL_TENANT_COLUMN
    SQL_TENANT_COLUMN_OVERRIDES: Dict[str, str] = {"users": "id"}
    SQL_TENANT_MARKER: str = ":userId"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
