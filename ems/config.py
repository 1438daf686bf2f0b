from typing import List, Literal, cast
from pydantic import AnyHttpUrl, computed_field
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "Employee Management"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12
    FIRST_ADMIN_BOOTSTRAP_TOKEN: str | None = None

    # Validation
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    # Edge protection
    EDGE_PROTECTION_MODE: Literal["LIVE", "DRY_RUN", "OFF"] = "LIVE"
    EDGE_BLOCKED_USER_AGENTS: List[str] = ["bot", "crawler", "spider", "curl", "wget", "scrapy", "headless"]
    RATE_LIMIT_AUTH_MAX: int = 10
    RATE_LIMIT_AUTH_WINDOW_SECONDS: int = 600
    RATE_LIMIT_EMPLOYEE_CREATE_MAX: int = 2
    RATE_LIMIT_EMPLOYEE_CREATE_WINDOW_SECONDS: int = 600
    RATE_LIMIT_EMPLOYEE_READ_MAX: int = 100
    RATE_LIMIT_EMPLOYEE_READ_WINDOW_SECONDS: int = 60
    RATE_LIMIT_EMPLOYEE_WRITE_MAX: int = 100
    RATE_LIMIT_EMPLOYEE_WRITE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_DEFAULT_MAX: int = 60
    RATE_LIMIT_DEFAULT_WINDOW_SECONDS: int = 60

    # Signup email screening
    SIGNUP_EMAIL_CHECK_DELIVERABILITY: bool = True
    SIGNUP_BLOCKED_EMAIL_DOMAINS: List[str] = [
        "mailinator.com",
        "guerrillamail.com",
        "10minutemail.com",
        "temp-mail.org",
        "yopmail.com",
        "trashmail.com",
        "sharklasers.com",
        "dispostable.com",
    ]

    # Audit
    AUDIT_QUEUE_SIZE: int = 1000

    # Database
    DATABASE_URL: str | None = None
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "employees"

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(cast(MultiHostUrl, MultiHostUrl.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_HOST,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )))

    @property
    def diagnostics_enabled(self) -> bool:
        return self.DEBUG and self.APP_ENV != "production"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

settings = Settings()  # type: ignore
