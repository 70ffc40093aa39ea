"""Environment-based configuration for Dancer."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dancer.store.configuration import PipelineConfiguration


class Settings(BaseSettings):
    """Application settings loaded from DANCER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DANCER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    model_name: str = "dancer_balanced"
    models_dir: str = "models"
    model_repo: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Pipeline defaults (overridden by the persisted configuration file)
    threshold: float = Field(default=0.5, ge=0.0)
    mirror: bool = False
    analysis_enabled: bool = True
    target_width: int = Field(default=160, gt=0)
    target_height: int = Field(default=256, gt=0)
    normalize_mean: float = 0.0
    normalize_std: float = Field(default=255.0, gt=0.0)
    config_file: str | None = None

    def pipeline_defaults(self) -> PipelineConfiguration:
        """Build the initial pipeline configuration from these settings."""
        return PipelineConfiguration(
            threshold=self.threshold,
            mirror=self.mirror,
            analysis_enabled=self.analysis_enabled,
            target_width=self.target_width,
            target_height=self.target_height,
            mean=self.normalize_mean,
            std=self.normalize_std,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
