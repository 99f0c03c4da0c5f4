from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from functools import lru_cache
from fastapi import Depends
from typing_extensions import Annotated

load_dotenv()


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./tasks.db"
    database_echo: bool = False

    cache_backend: str = "memory"  # "memory" or "redis"
    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5
    cache_namespace: str = "taskcache:"
    cache_maxsize: int = 2048

    default_ttl_seconds: int = 300
    list_ttl_seconds: int = 300
    search_ttl_seconds: int = 180  # search results go stale faster
    task_ttl_seconds: int = 600
    stats_ttl_seconds: int = 600

    list_default_limit: int = 20
    search_default_limit: int = 50
    max_page_limit: int = 100

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
