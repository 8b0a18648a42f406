from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ENCRYPTION_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    TWO_FACTOR_WINDOW: int = 4
    TWO_FACTOR_ISSUER: str = "Panel"
    RECOVERY_CODE_COUNT: int = 10
    RECOVERY_CODE_LENGTH: int = 10
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore"
    )


settings = Settings()
