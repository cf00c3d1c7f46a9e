from functools import lru_cache

from pydantic import BaseModel, ConfigDict

from app.utils.env_helper import env_float, env_int, env_list, env_none_or_str


class Settings(BaseModel):
    """
    Runtime configuration read from the environment (and `.env`).
    """

    model_config = ConfigDict(frozen=True)

    supabase_url: str | None = None
    supabase_key: str | None = None
    jwt_secret: str | None = None

    message_page_size: int = 50
    conversation_page_size: int = 100
    request_timeout_seconds: float = 12.0
    thread_retry_delay_seconds: float = 0.6
    request_memo_ttl_seconds: float = 1.5

    log_level: str = "INFO"
    log_format: str = "text"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:8080"]


@lru_cache()
def get_settings() -> Settings:
    return Settings(
        supabase_url=env_none_or_str("PUBLIC_SUPABASE_URL"),
        supabase_key=env_none_or_str("SECRET_API_KEY"),
        jwt_secret=env_none_or_str("SUPABASE_JWT_SECRET"),
        message_page_size=env_int("MESSAGE_PAGE_SIZE", 50),
        conversation_page_size=env_int("CONVERSATION_PAGE_SIZE", 100),
        request_timeout_seconds=env_float("REQUEST_TIMEOUT_SECONDS", 12.0),
        thread_retry_delay_seconds=env_float("THREAD_RETRY_DELAY_SECONDS", 0.6),
        request_memo_ttl_seconds=env_float("REQUEST_MEMO_TTL_SECONDS", 1.5),
        log_level=env_none_or_str("LOG_LEVEL", "INFO"),
        log_format=env_none_or_str("LOG_FORMAT", "text"),
        cors_origins=env_list(
            "CORS_ORIGINS", ["http://localhost:5173", "http://localhost:8080"]
        ),
    )
