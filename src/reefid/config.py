"""Environment-based configuration for ReefID."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from REEFID_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REEFID_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Bundled assets
    assets_dir: Path = Path("assets")
    model_filename: str = "sea_animals_model.onnx"
    labels_filename: str = "class_names.txt"
    model_repo_id: str | None = None

    # Model input geometry (square, RGB)
    input_size: int = Field(default=150, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Model management
    cache_models: bool = True
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    @property
    def model_path(self) -> Path:
        return self.assets_dir / self.model_filename

    @property
    def labels_path(self) -> Path:
        return self.assets_dir / self.labels_filename


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
