"""
Configuration management and loading.

Budget ceilings, generation window, retry count and provider settings are
configuration, never constants baked into the pipeline.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class BudgetConfig:
    """Budget ceilings for cost control."""
    daily: float = 50.0
    per_episode: float = 3.0
    currency: str = "GBP"

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ValueError("daily budget must be > 0")
        if self.per_episode <= 0:
            raise ValueError("per_episode budget must be > 0")
        if not self.currency:
            raise ValueError("currency cannot be empty")


@dataclass(frozen=True)
class ScheduleConfig:
    """Generation window and retry settings."""
    lead_time_hours: float = 4.0
    max_attempts: int = 3
    safety_margin_minutes: float = 30.0
    stale_claim_minutes: float = 15.0
    max_concurrency: int = 4

    def __post_init__(self):
        if self.lead_time_hours <= 0:
            raise ValueError("lead_time_hours must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.safety_margin_minutes < 0:
            raise ValueError("safety_margin_minutes cannot be negative")
        if self.safety_margin >= self.lead_time:
            raise ValueError("safety_margin_minutes must be shorter than the lead time")
        if self.stale_claim_minutes <= 0:
            raise ValueError("stale_claim_minutes must be > 0")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

    @property
    def lead_time(self) -> timedelta:
        return timedelta(hours=self.lead_time_hours)

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(minutes=self.safety_margin_minutes)

    @property
    def stale_claim_after(self) -> timedelta:
        return timedelta(minutes=self.stale_claim_minutes)


@dataclass(frozen=True)
class GenerationConfig:
    """Content-generation provider parameters."""
    model: str = "gpt-4o"
    max_tokens: int = 4000
    temperature: float = 0.7
    timeout_seconds: float = 120.0
    min_words: int = 150

    def __post_init__(self):
        if not self.model:
            raise ValueError("model cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.min_words < 0:
            raise ValueError("min_words cannot be negative")


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage location."""
    db_path: str = "futures_pipeline.db"
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def __post_init__(self):
        # A claim must outlive the provider call it covers.
        if self.schedule.stale_claim_after.total_seconds() <= self.generation.timeout_seconds:
            raise ValueError(
                "stale_claim_minutes must be longer than the generation timeout_seconds"
            )


_SECTIONS = {
    'budget': (BudgetConfig, {'daily': float, 'per_episode': float, 'currency': str}),
    'schedule': (ScheduleConfig, {
        'lead_time_hours': float,
        'max_attempts': int,
        'safety_margin_minutes': float,
        'stale_claim_minutes': float,
        'max_concurrency': int,
    }),
    'generation': (GenerationConfig, {
        'model': str,
        'max_tokens': int,
        'temperature': float,
        'timeout_seconds': float,
        'min_words': int,
    }),
    'storage': (StorageConfig, {'db_path': str, 'timeout_seconds': float}),
}


def default_config(db_path: Optional[str] = None) -> PipelineConfig:
    """Design-target configuration: 4h window, 3 attempts, £50/day, £3/episode."""
    if db_path is None:
        return PipelineConfig()
    return PipelineConfig(storage=StorageConfig(db_path=db_path))


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns. Omitted sections and keys fall back
    to the defaults of ``default_config()``.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, (section_cls, fields) in _SECTIONS.items():
        data = raw_config.get(name, {})
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = section_cls(**_parse_section(data, fields, name))

    return PipelineConfig(**sections)


def _parse_section(data: Dict[str, Any], fields: Dict[str, type], path: str) -> Dict[str, Any]:
    """Check keys and coerce values of one configuration section.

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    unknown_keys = set(data.keys()) - set(fields)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = fields[key]
        if expected is str:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in {path} must be a string")
            parsed[key] = value
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {path} must be an integer")
            parsed[key] = value
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {path} must be a number")
            parsed[key] = float(value)
    return parsed
