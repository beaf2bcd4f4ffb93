"""Configuration models for the NeuroGuard pipeline."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()

ModelT = TypeVar("ModelT", bound=BaseModel)


class DetectionConfig(BaseModel):
    """Thresholds used when promoting anomalies to threats."""

    sensitivity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    learning_rate: float = Field(default=0.01, ge=0.0)
    temporal_window_size: int = Field(default=10, ge=1)
    min_samples: int = Field(default=100, ge=0)
    adaptation_rate: float = Field(default=0.05, ge=0.0)
    feature_weights: Dict[str, float] = Field(default_factory=dict)
    orchestration_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    clustering_enabled: bool = True
    clustering_window_ms: float = Field(default=300_000.0, gt=0.0)
    min_shared_features: int = Field(default=3, ge=1)


class PreprocessingConfig(BaseModel):
    normalization_method: Literal["minmax", "zscore", "log", "none"] = "minmax"
    temporal_aggregation: bool = True
    aggregation_window: float = Field(default=5000.0, gt=0.0)
    feature_selection: List[str] = Field(default_factory=list)
    dimensionality_reduction: bool = False
    pca_components: Optional[int] = Field(default=None, ge=1)

    @field_validator("feature_selection", mode="before")
    @classmethod
    def _split_selection(cls, value: Any) -> Any:
        if isinstance(value, str):
            parts = [part.strip() for part in value.replace("\n", ",").split(",")]
            return [part for part in parts if part]
        return value

    @field_validator("normalization_method", mode="before")
    @classmethod
    def _lower_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class AlertConfig(BaseModel):
    min_severity_to_alert: Literal["low", "medium", "high", "critical"] = "medium"
    notification_sound: bool = True
    auto_acknowledge_after_ms: float = Field(default=86_400_000.0, ge=0.0)
    max_alerts_to_store: int = Field(default=100, ge=1)
    auto_execute_actions: bool = False


class NetworkConfig(BaseModel):
    """Topology and firing parameters of the spiking network."""

    input_size: int = Field(default=20, ge=1)
    hidden_layers: List[int] = Field(default_factory=lambda: [30, 20])
    output_size: int = Field(default=5, ge=1)
    learning_rate: float = Field(default=0.01, ge=0.0)
    threshold: float = Field(default=0.5, gt=0.0)
    refractory_period: float = Field(default=5.0, ge=0.0)

    @field_validator("hidden_layers", mode="before")
    @classmethod
    def _split_layers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [int(part) for part in value.replace(" ", ",").split(",") if part.strip()]
        return value

    @field_validator("hidden_layers")
    @classmethod
    def _positive_layers(cls, value: List[int]) -> List[int]:
        if any(size < 1 for size in value):
            raise ValueError("hidden layer sizes must be positive")
        return value


class Settings(BaseSettings):
    """Environment-backed settings for a NeuroGuard deployment."""

    model_config = SettingsConfigDict(
        env_prefix="NEUROGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)

    random_seed: Optional[int] = None
    capture_interface: Optional[str] = None
    ingestion_queue_size: int = Field(default=10_000, ge=1)

    text_generation_url: str = "http://localhost:11434/api"
    text_generation_model: str = "llama3"
    text_generation_timeout: float = Field(default=30.0, gt=0.0)

    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


def apply_changes(model: ModelT, changes: Dict[str, Any]) -> ModelT:
    """Return a validated copy of ``model`` with ``changes`` merged in.

    Unknown keys raise ``ValueError`` so that typos in runtime updates are not
    silently ignored.
    """

    cls: Type[ModelT] = type(model)
    unknown = set(changes) - set(cls.model_fields)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} fields: {', '.join(sorted(unknown))}")
    return cls.model_validate({**model.model_dump(), **changes})


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = [
    "AlertConfig",
    "DetectionConfig",
    "NetworkConfig",
    "PreprocessingConfig",
    "Settings",
    "apply_changes",
    "get_settings",
]
