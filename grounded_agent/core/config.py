# The module is to define the configuration settings for the application.
# Date: 2026-10-18
# Version: 0.2.0

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    """
    The Settings class is used to define the configuration settings for the application.
    It inherits from BaseSettings, which allows it to load environment variables
    and provides type validation for the settings.
    Attributes:
        OPENAI_API_KEY (str): API key for the OpenAI-compatible provider.
        OPENAI_BASE_URL (Optional[str]): Base URL for the provider API (Azure, proxy, local server).
        MODEL_FAST (str): Concrete model behind the "fast" alias.
        MODEL_SMART (str): Concrete model behind the "smart" alias.
        MODEL_REASONING (str): Concrete model behind the "reasoning" alias.
        DEFAULT_MODEL (str): Logical or concrete model used when a call names none.
        LLM_TEMPERATURE (float): Default sampling temperature.
        LLM_MAX_TOKENS (int): Default maximum output tokens.
        LLM_TIMEOUT_SECONDS (float): Timeout for a single provider call.
        LLM_MAX_RETRIES (int): Retries for retryable provider failures.
        LLM_RETRY_BASE_DELAY (float): Base delay in seconds for exponential backoff.
        MAX_TOOL_ITERATIONS (int): Ceiling on model calls per orchestration run.
        AUDIT_FINAL_RESPONSE (bool): Audit the final answer against tool facts.
        CACHE_BACKEND (str): "memory" or "redis".
        CACHE_NAMESPACE (str): Prefix for every cache key.
        CACHE_DEFAULT_TTL (int): TTL in seconds when a set names none.
        REDIS_URL (str): Redis connection URL (cache backend and Celery broker).
        CHUNK_TTL_SECONDS (int): TTL of a poll chunk buffer.
        POLL_MIN_CHUNK_CHARS (int): Minimum characters per poll chunk.
        POLL_BACKEND (str): "asyncio" runs poll requests in-process, "celery" in a worker.
        LOG_LEVEL (str): Level of the project logger.
    """
    # LLM provider
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: Optional[str] = None

    # Model aliases
    MODEL_FAST: str = "gpt-4o-mini"
    MODEL_SMART: str = "gpt-4o"
    MODEL_REASONING: str = "o3-mini"
    DEFAULT_MODEL: str = "smart"

    # Call defaults
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 4096
    LLM_TIMEOUT_SECONDS: float = 60.0
    LLM_MAX_RETRIES: int = 2
    LLM_RETRY_BASE_DELAY: float = 1.0

    # Orchestration
    MAX_TOOL_ITERATIONS: int = 10
    AUDIT_FINAL_RESPONSE: bool = True

    # CACHE
    CACHE_BACKEND: str = "memory"
    CACHE_NAMESPACE: str = "grounded"
    CACHE_DEFAULT_TTL: int = 300

    # REDIS
    REDIS_URL: str = "redis://localhost:6379/0"

    # Poll delivery
    CHUNK_TTL_SECONDS: int = 300
    POLL_MIN_CHUNK_CHARS: int = 32
    POLL_BACKEND: str = "asyncio"

    LOG_LEVEL: str = "INFO"


    class Config:
        #
        env_file = ".env"
        env_file_encoding = 'utf-8'

# lru_cache to cache the settings instance.
@lru_cache
def get_settings():
    return Settings()


if __name__ == "__main__":
    settings = get_settings()
    print(settings.model_dump_json(indent=4))
