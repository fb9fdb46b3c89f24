from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./bananagram.sqlite3"
    api_key: str = ""  # empty = no auth check (local dev)
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:8000"]
    http_timeout_seconds: float = 60.0
    max_photo_size_bytes: int = 20 * 1024 * 1024  # 20MB

    # Vision-language model (analysis + suggestions)
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    analysis_jpeg_quality: float = 0.8
    analysis_temperature: float = 0.7
    analysis_max_output_tokens: int = 1024
    suggestion_temperature: float = 0.8
    suggestion_max_output_tokens: int = 2048

    # Generative-media API (transformations)
    fal_api_key: str = ""
    fal_queue_url: str = "https://queue.fal.run"
    fal_storage_url: str = "https://rest.alpha.fal.ai/storage/upload/initiate"
    inline_image_limit_bytes: int = 1 * 1024 * 1024  # above this, upload to blob storage
    inline_compress_threshold_bytes: int = 2 * 1024 * 1024
    compression_target_bytes: int = 1_500_000
    compression_quality_levels: list[float] = [0.7, 0.5, 0.3, 0.2]
    image_poll_interval_seconds: float = 2.0
    image_poll_max_attempts: int = 30
    video_poll_interval_seconds: float = 5.0
    video_poll_max_attempts: int = 60
    poll_backoff_factor: float = 1.0
    default_video_duration_seconds: float = 5.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
