"""Application configuration."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (local development defaults)
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "intranet"
    POSTGRES_USER: str = "intranet_user"
    POSTGRES_PASSWORD: str = "intranet_dev_password"

    # Full URL override (e.g. sqlite+aiosqlite:// for tests)
    DATABASE_URL: str = ""

    DB_POOL_SIZE: int = 10
    DB_POOL_TIMEOUT: int = 30

    # API
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Intranet Expenses API"
    VERSION: str = "1.0.0"

    # CORS - wildcard only safe for local dev
    CORS_ORIGINS: list[str] = ["*"]

    # ==========================================================================
    # Authentication
    # ==========================================================================

    # Bearer tokens are issued by the intranet auth service; we only verify them
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"

    # ==========================================================================
    # Receipts
    # ==========================================================================

    UPLOAD_PATH: str = "./uploads"
    MAX_RECEIPT_SIZE: int = 5 * 1024 * 1024  # 5MB
    ALLOWED_RECEIPT_TYPES: list[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]

    # ==========================================================================
    # Expenses
    # ==========================================================================

    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_EXPENSE_CATEGORIES: list[str] = [
        "Travel",
        "Meals",
        "Office Supplies",
        "Training",
        "Other",
    ]
    # system_settings key holding the runtime category list
    EXPENSE_CATEGORIES_KEY: str = "expense_categories"

    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # ==========================================================================
    # Logging
    # ==========================================================================

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @property
    def cors_allows_credentials(self) -> bool:
        """Only allow credentials if CORS is not wildcard (security requirement)."""
        return "*" not in self.CORS_ORIGINS

    @property
    def database_url(self) -> str:
        """Construct the database connection URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
