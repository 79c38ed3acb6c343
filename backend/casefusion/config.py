import logging
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_config_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Google AI Configuration
    google_api_key: str = ""

    # Application Configuration
    environment: str = "development"
    debug: bool = False

    allowed_origins: List[str] = ["*"]

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    # Server Configuration
    port: int = 3001
    host: str = "0.0.0.0"

    # Model Configuration
    reasoning_model: str = "gemini-3-pro-preview"
    image_models: List[str] = [
        "gemini-3-pro-image-preview",
        "gemini-2.0-flash-exp-image-generation",
    ]
    imagen_model: str = "imagen-4-fast-generate"
    model_max_retries: int = 3

    @field_validator("image_models", mode="before")
    @classmethod
    def parse_image_models(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    # Storage Configuration
    database_path: str = "./data/casefusion.db"
    uploads_dir: str = "./uploads"
    max_upload_size_mb: int = 200

    # Evidence processing
    frame_interval_seconds: int = 1
    frame_downsample_threshold: int = 30  # Videos with more frames than this get down-sampled
    max_analyzed_frames: int = 15
    frame_analysis_delay_seconds: float = 0.5
    evidence_item_delay_seconds: float = 0.1
    max_text_chars: int = 50_000

    # Reconstruction
    reconstruction_top_n: int = 2
    reconstruction_viewpoint: str = "from doorway"
    reconstruction_delay_seconds: float = 1.5

    # Assembly
    heatmap_segments: int = 10

    # Progress streaming
    sse_heartbeat_seconds: float = 30.0
    sse_queue_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True  # Allow runtime updates
    )

    def validate_config(self):
        """Log warnings for missing configurations."""
        warnings = []
        if not self.google_api_key:
            warnings.append("GOOGLE_API_KEY not set - evidence analysis and reconstructions will not work")
        if not self.image_models:
            warnings.append("IMAGE_MODELS is empty - reconstructions will use placeholder renders only")
        if self.max_analyzed_frames < 2:
            warnings.append("MAX_ANALYZED_FRAMES below 2 - first and last video frames cannot both be kept")
        for w in warnings:
            _config_logger.warning(f"[CONFIG] {w}")
        return warnings


# Global settings instance
settings = Settings()
