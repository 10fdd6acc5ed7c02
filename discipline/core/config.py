from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Global qualification policy: outstanding demerit points at or above this value.
    detention_points_threshold: int = Field(10, alias="DETENTION_POINTS_THRESHOLD")
    detention_default_capacity: int = Field(30, alias="DETENTION_DEFAULT_CAPACITY")
    detention_default_duration: int = Field(60, alias="DETENTION_DEFAULT_DURATION")
    detention_max_recurrences: int = Field(52, alias="DETENTION_MAX_RECURRENCES")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
