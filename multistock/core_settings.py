from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "multistock"
    POSTGRES_USER: str = "multistock"
    POSTGRES_PASSWORD: str = "multistock"
    # Overrides the composed PostgreSQL URL (sqlite+pysqlite:// for local runs)
    DATABASE_URL: Optional[str] = None

    DB_STATEMENT_TIMEOUT_MS: int = 30000
    DB_LOCK_TIMEOUT_MS: int = 5000
    DB_POOL_TIMEOUT: int = 10
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10

    REDIS_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    TENANT_HEADER: str = "X-Tenant"
    TENANT_PUBLIC_PATHS: str = (
        "/api/health,/api/system,/api/admin,/api/tenants,/health,/metrics,"
        "/info,/favicon.ico,/api/docs,/api/openapi.json,/api/redoc,/"
    )
    TENANT_IGNORED_SUBDOMAINS: str = "www,api"

    INSIGHT_DEDUP_HOURS: int = 24
    INSIGHT_TREND_THRESHOLD_PCT: float = 15.0
    INSIGHT_TREND_WINDOW_DAYS: int = 30
    INSIGHT_OVERDUE_MIN_AMOUNT: float = 1000.0
    INSIGHT_STAR_WINDOW_DAYS: int = 60
    INSIGHT_STAR_MIN_FREQUENCY: int = 5
    INSIGHT_STAR_MIN_MARGIN_PCT: float = 25.0

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def public_paths(self) -> list[str]:
        return [p.strip() for p in self.TENANT_PUBLIC_PATHS.split(",") if p.strip()]

    @property
    def ignored_subdomains(self) -> set[str]:
        return {s.strip().lower() for s in self.TENANT_IGNORED_SUBDOMAINS.split(",") if s.strip()}

@lru_cache
def get_settings() -> Settings:
    return Settings()
