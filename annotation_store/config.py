"""Store settings from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Annotation store configuration."""

    read_only: bool = False

    # Debounced persistence (seconds)
    debounce_delay: float = 1.0
    debounce_max_wait: float = 10.0

    # Delay between a "page rendered" signal and the missing-image scan (seconds)
    render_grace_period: float = 2.0

    # Defaults applied on creation
    default_color: str = "#ffd400"
    object_key_length: int = 8
    object_key_alphabet: str = "23456789ABCDEFGHIJKLMNPQRSTUVWXYZ"

    # Encoding used when the renderer hands back a PIL image
    image_format: str = "JPEG"
    image_quality: int = 80

    model_config = {
        "env_prefix": "ANNOTATION_STORE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
