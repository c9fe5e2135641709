"""Configuration management for the tabular deidentification engine."""

import os
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ..policy.techniques import Technique


ENV_PREFIX = "DEID_ENGINE_"


class StoreBackend(str, Enum):
    """Correspondence store backends."""
    MEMORY = "memory"
    DATABASE = "database"


class StoreFallback(str, Enum):
    """Behaviour when the correspondence store times out or fails."""
    FAIL = "fail"
    HASH = "hash"


class DeidentificationConfig(BaseModel):
    """Configuration for technique application."""
    strict_mode: bool = Field(default=False, description="Escalate field-level failures to the batch")
    default_technique: Optional[Technique] = Field(
        default=None, description="Technique for unmatched fields; None passes them through"
    )
    reversible_by_default: bool = Field(default=True)
    perturbation_seed: Optional[int] = Field(default=None, description="Seed for reproducible noise")
    suppression_sentinel: str = Field(default="[SUPPRESSED]")
    reference_date: Optional[date] = Field(default=None, description="Date ages are computed against")

    def get_reference_date(self) -> date:
        return self.reference_date or date.today()


class RiskConfig(BaseModel):
    """Configuration for re-identification risk evaluation."""
    enabled: bool = Field(default=True)
    quasi_identifiers: List[List[str]] = Field(default_factory=list)
    k_min_threshold: int = Field(default=5)
    suppress_all_below_k: bool = Field(
        default=False, description="Recommend suppression for every class below k, not only unique records"
    )
    outlier_scan: bool = Field(default=True)
    outlier_exclude_fields: List[str] = Field(default_factory=list)
    sensitive_fields: List[str] = Field(default_factory=list)
    evaluate_input: bool = Field(default=False, description="Also assess the raw batch")

    @field_validator('k_min_threshold')
    @classmethod
    def validate_k_min(cls, v):
        if v < 1:
            raise ValueError('k_min_threshold must be at least 1')
        return v

    @field_validator('quasi_identifiers')
    @classmethod
    def validate_quasi_identifiers(cls, v):
        for combination in v:
            if not combination:
                raise ValueError('Quasi-identifier combinations must not be empty')
        return v


class ProcessingConfig(BaseModel):
    """Configuration for batch processing."""
    max_workers: int = Field(default=4)
    stable_ordering: bool = Field(default=True, description="Preserve input order in the output")
    return_partial_on_error: bool = Field(
        default=False, description="Return transformed records alongside errors for failed batches"
    )

    @field_validator('max_workers')
    @classmethod
    def validate_workers(cls, v):
        if v < 1:
            raise ValueError('max_workers must be at least 1')
        return v


class CorrespondenceConfig(BaseModel):
    """Configuration for the correspondence store."""
    backend: StoreBackend = Field(default=StoreBackend.MEMORY)
    timeout_seconds: float = Field(default=5.0)
    fallback: StoreFallback = Field(default=StoreFallback.FAIL)
    key_env: str = Field(default=f"{ENV_PREFIX}STORE_KEY", description="Env var holding the base64 AES key")

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Store timeout must be positive')
        return v


class DatabaseConfig(BaseModel):
    """Configuration for the database-backed correspondence store."""
    url: str = Field(default="sqlite:///correspondence.db")
    pool_size: int = Field(default=10)
    max_overflow: int = Field(default=20)
    echo: bool = Field(default=False, description="Whether to echo SQL queries")


class APIConfig(BaseModel):
    """Configuration for API server."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    workers: int = Field(default=1)
    reload: bool = Field(default=False)
    log_level: str = Field(default="info")
    policy_path: Optional[str] = Field(default=None, description="Policy set served when a request carries none")


class Config(BaseModel):
    """Main configuration class for the tabular deidentification engine."""

    deidentification: DeidentificationConfig = Field(default_factory=DeidentificationConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    correspondence: CorrespondenceConfig = Field(default_factory=CorrespondenceConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    # General settings
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**_apply_env_overrides(config_data))

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(**_apply_env_overrides({}))

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, indent=2)

    def with_overrides(self, **overrides: Any) -> "Config":
        """Return a copy with top-level sections merged with overrides."""
        config_dict = self.model_dump()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(config_dict.get(key), dict):
                config_dict[key].update(value)
            else:
                config_dict[key] = value
        return Config(**config_dict)


# Environment variable -> (section, key)
_ENV_OVERRIDES = {
    "STRICT_MODE": ("deidentification", "strict_mode"),
    "REVERSIBLE_BY_DEFAULT": ("deidentification", "reversible_by_default"),
    "PERTURBATION_SEED": ("deidentification", "perturbation_seed"),
    "K_MIN_THRESHOLD": ("risk", "k_min_threshold"),
    "MAX_WORKERS": ("processing", "max_workers"),
    "STORE_BACKEND": ("correspondence", "backend"),
    "STORE_TIMEOUT": ("correspondence", "timeout_seconds"),
    "DATABASE_URL": ("database", "url"),
    "POLICY_PATH": ("api", "policy_path"),
    "LOG_LEVEL": (None, "log_level"),
    "DEBUG": (None, "debug"),
}


def _apply_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay DEID_ENGINE_* environment variables onto raw config data."""
    for suffix, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(f"{ENV_PREFIX}{suffix}")
        if value is None:
            continue
        if section is None:
            config_data[key] = value
        else:
            config_data.setdefault(section, {})[key] = value
    return config_data


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file or environment variables."""
    if config_path:
        return Config.from_yaml(config_path)

    # Try to find default config file
    default_paths = [
        "config/default.yaml",
        "config.yaml",
        os.path.expanduser("~/.tabular_deidentification/config.yaml"),
    ]

    for path in default_paths:
        if Path(path).exists():
            return Config.from_yaml(path)

    # Fall back to environment variables
    return Config.from_env()


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
