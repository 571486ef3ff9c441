import os
from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: str) -> list[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


user = os.getenv("DB_USER")
password = os.getenv("DB_PASSWORD")
host = os.getenv("DB_HOST")
port = os.getenv("DB_PORT")
db_name = os.getenv("DB_NAME")
database_url = os.getenv("DATABASE_URL")

redis_host = os.getenv("REDIS_HOST", "redis")
redis_port = int(os.getenv("REDIS_PORT", "6379"))
redis_enabled = _get_bool("REDIS_ENABLED", True)

anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
ai_model = os.getenv("AI_MODEL", "claude-sonnet-4-5-20250929")
ai_fallback_models = _get_list("AI_FALLBACK_MODELS", "claude-3-5-haiku-20241022")
ai_timeout_seconds = float(os.getenv("AI_TIMEOUT_SECONDS", "10"))
ai_max_attempts = int(os.getenv("AI_MAX_ATTEMPTS", "3"))
ai_retry_budget_seconds = float(os.getenv("AI_RETRY_BUDGET_SECONDS", "10"))

# 7 days
combination_cache_ttl = int(os.getenv("COMBINATION_CACHE_TTL", "604800"))

allow_self_combination = _get_bool("ALLOW_SELF_COMBINATION", False)
profanity_filter_enabled = _get_bool("PROFANITY_FILTER_ENABLED", False)

rate_limit_enabled = _get_bool("RATE_LIMIT_ENABLED", True)
write_rate_limit = os.getenv("WRITE_RATE_LIMIT", "10/minute")
ai_generation_rate_limit = os.getenv("AI_GENERATION_RATE_LIMIT", "30/hour")

use_count_flush_seconds = int(os.getenv("USE_COUNT_FLUSH_SECONDS", "30"))

rate_limit_storage_uri = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")

if __name__ == "__main__":
    print(user, host, port, db_name, database_url, redis_host, redis_port, ai_model)
