from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Configuration loaded from environment variables."""

    database_url: str = "mongodb://localhost:27017/autoinc"
    debug: bool = False
    counter_collection: str = "identitycounters"  # Collection holding one row per counter key
    retry_attempts: int = 10  # Max attempts when a concurrent caller hits the same key
    retry_delay: float = 0.005  # Seconds between duplicate-key retries

    model_config = {
        "env_file": [".env"],
        "env_prefix": "AUTOINC_",
        "extra": "ignore",
    }
