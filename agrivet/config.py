import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret")
    ENV: str = os.getenv("FLASK_ENV", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Redis connection; REDIS_URL wins over the host/port/password triple
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    USE_REDIS_CACHE: bool = os.getenv("USE_REDIS_CACHE") == "1"
    CACHE_ENABLED: bool = os.getenv("CACHE_ENABLED", "true").lower() == "true"

    # TTLs in seconds
    CACHE_TTL_DEFAULT: int = int(os.getenv("CACHE_TTL_DEFAULT", "3600"))
    CACHE_TTL_BRANCHES: int = int(os.getenv("CACHE_TTL_BRANCHES", "1800"))
    CACHE_TTL_PRODUCTS: int = int(os.getenv("CACHE_TTL_PRODUCTS", "1800"))
    CACHE_TTL_CATEGORIES: int = int(os.getenv("CACHE_TTL_CATEGORIES", "3600"))
    CACHE_TTL_PROMOTIONS: int = int(os.getenv("CACHE_TTL_PROMOTIONS", "1800"))

    DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
    DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "10"))
    DB_CONNECT_TIMEOUT: int = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    def redis_url(self) -> str:
        if self.REDIS_URL:
            return self.REDIS_URL
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


def get_config() -> "Config":
    return Config()
