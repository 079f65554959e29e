"""
Pydantic schema for the force plate engine settings.

Defaults come from ``config.py``. The keys recognised by external
configuration files are accepted under their camelCase names
(``sampleRateHz``, ``calibrationDurationS``, ``weightStabilityThresholdKg``,
``flightForceThresholdN``, ``maxPhaseDurationMs``) as well as the
snake_case field names.
"""
from pathlib import Path
from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

import config
from processing.errors import ConfigFileNotFoundError
from processing.models import TestPhase


class EngineSettings(BaseModel):
    """Validated, immutable settings for one engine instance"""

    model_config = ConfigDict(populate_by_name=True, extra='forbid', frozen=True)

    # Acquisition
    sample_rate_hz: int = Field(
        default=config.SAMPLE_RATE,
        alias='sampleRateHz',
        description="Negotiated sample rate (Hz): 500, 1000 or 2000"
    )
    queue_capacity: int = Field(
        default=config.QUEUE_CAPACITY, gt=0,
        description="Samples buffered between producer and consumer before drop-oldest kicks in"
    )
    stream_timeout_s: float = Field(
        default=config.STREAM_TIMEOUT_S, gt=0,
        description="Silence on the link longer than this is treated as a drop"
    )

    # Calibration
    calibration_duration_s: float = Field(
        default=config.CALIBRATION_DURATION_S, alias='calibrationDurationS', gt=0, le=30,
        description="Unloaded window used for zero offsets"
    )
    calibration_noise_ceiling_n: float = Field(default=config.CALIBRATION_NOISE_CEILING_N, gt=0)

    # Bodyweight
    presence_threshold_n: float = Field(default=config.PRESENCE_THRESHOLD_N, gt=0)
    weight_stability_threshold_kg: float = Field(
        default=config.WEIGHT_STABILITY_THRESHOLD_KG, alias='weightStabilityThresholdKg', gt=0,
        description="Max standard deviation (kg) of the bodyweight window"
    )
    weight_stability_duration_s: float = Field(default=config.WEIGHT_STABILITY_DURATION_S, gt=0)
    weight_timeout_s: float = Field(default=config.WEIGHT_TIMEOUT_S, gt=0)
    min_body_weight_n: float = Field(default=config.MIN_BODY_WEIGHT_N, gt=0)

    # Phase detection
    flight_force_threshold_n: float = Field(
        default=config.FLIGHT_FORCE_THRESHOLD_N, alias='flightForceThresholdN', gt=0,
        description="Total force below this counts as no contact"
    )
    unweighting_sigma_k: float = Field(default=config.UNWEIGHTING_SIGMA_K, gt=0)
    quiet_band_floor_n: float = Field(default=config.QUIET_BAND_FLOOR_N, ge=0)
    onset_dwell_ms: float = Field(default=config.ONSET_DWELL_MS, ge=0)
    velocity_dwell_ms: float = Field(default=config.VELOCITY_DWELL_MS, ge=0)
    flight_dwell_ms: float = Field(default=config.FLIGHT_DWELL_MS, ge=0)
    landing_dwell_ms: float = Field(default=config.LANDING_DWELL_MS, ge=0)
    recovery_dwell_ms: float = Field(default=config.RECOVERY_DWELL_MS, ge=0)
    recovery_band_fraction: float = Field(default=config.RECOVERY_BAND_FRACTION, gt=0, lt=1)
    balance_hold_duration_s: float = Field(default=config.BALANCE_HOLD_DURATION_S, gt=0)
    default_max_phase_duration_ms: float = Field(default=config.DEFAULT_MAX_PHASE_DURATION_MS, gt=0)
    max_phase_duration_ms: Dict[str, float] = Field(
        default_factory=lambda: dict(config.MAX_PHASE_DURATION_MS),
        alias='maxPhaseDurationMs',
        description="Per-phase abort guard, keyed by phase name"
    )

    # Metrics
    filter_cutoff_hz: float = Field(default=config.FILTER_CUTOFF, ge=0)
    filter_order: int = Field(default=config.FILTER_ORDER, ge=1, le=8)
    rfd_window_ms: float = Field(default=config.RFD_WINDOW_MS, gt=0)
    cop_sample_interval_ms: float = Field(default=config.COP_SAMPLE_INTERVAL_MS, gt=0)
    cop_min_force_n: float = Field(default=config.COP_MIN_FORCE_N, gt=0)

    # Quality
    quality_weights: Dict[str, float] = Field(default_factory=lambda: dict(config.QUALITY_WEIGHTS))
    height_agreement_tolerance: float = Field(default=config.HEIGHT_AGREEMENT_TOLERANCE, gt=0)
    asymmetry_warning_pct: float = Field(default=config.ASYMMETRY_WARNING_PCT, ge=0, le=100)
    asymmetry_error_pct: float = Field(default=config.ASYMMETRY_ERROR_PCT, gt=0, le=100)
    max_missing_sample_pct: float = Field(default=config.MAX_MISSING_SAMPLE_PCT, gt=0)
    missing_sample_penalty: float = Field(default=config.MISSING_SAMPLE_PENALTY, ge=0, le=100)

    # Session
    progress_interval_ms: float = Field(default=config.PROGRESS_INTERVAL_MS, gt=0)
    gap_factor: float = Field(default=config.GAP_FACTOR, gt=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator('sample_rate_hz')
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        if v not in config.SUPPORTED_SAMPLE_RATES:
            raise ValueError(f"sampleRateHz must be one of {config.SUPPORTED_SAMPLE_RATES}, got {v}")
        return v

    @field_validator('max_phase_duration_ms')
    @classmethod
    def validate_phase_names(cls, v: Dict[str, float]) -> Dict[str, float]:
        # Overrides are merged over the built-in limits
        normalised = dict(config.MAX_PHASE_DURATION_MS)
        for name, limit in v.items():
            key = name.upper()
            if key not in TestPhase.__members__:
                raise ValueError(f"Unknown phase in maxPhaseDurationMs: {name}")
            if limit <= 0:
                raise ValueError(f"maxPhaseDurationMs[{name}] must be positive, got {limit}")
            normalised[key] = float(limit)
        return normalised

    @field_validator('quality_weights')
    @classmethod
    def validate_quality_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - set(config.QUALITY_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown quality criteria: {sorted(unknown)}")
        if any(w < 0 for w in v.values()) or sum(v.values()) <= 0:
            raise ValueError("Quality weights must be non-negative with a positive sum")
        return v

    @model_validator(mode='after')
    def validate_relationships(self):
        if self.asymmetry_warning_pct >= self.asymmetry_error_pct:
            raise ValueError("asymmetry_warning_pct must be below asymmetry_error_pct")
        if self.flight_force_threshold_n >= self.presence_threshold_n:
            raise ValueError("flightForceThresholdN must be below presence_threshold_n")
        quiet_limit_s = self.max_phase_duration_s(TestPhase.QUIET_STANDING)
        if self.balance_hold_duration_s >= quiet_limit_s:
            raise ValueError("balance_hold_duration_s must be shorter than the QUIET_STANDING phase limit")
        return self

    @property
    def sample_interval_s(self) -> float:
        return 1.0 / self.sample_rate_hz

    @property
    def weight_stability_threshold_n(self) -> float:
        return self.weight_stability_threshold_kg * config.GRAVITY

    def max_phase_duration_s(self, phase: TestPhase) -> float:
        """Abort guard for ``phase`` in seconds."""
        return self.max_phase_duration_ms.get(phase.name, self.default_max_phase_duration_ms) / 1000.0

    @classmethod
    def from_yaml(cls, yaml_path) -> 'EngineSettings':
        """Load and validate settings from a YAML file"""
        import yaml

        yaml_file = Path(yaml_path)
        if not yaml_file.exists():
            raise ConfigFileNotFoundError(str(yaml_path))

        with open(yaml_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        return cls(**raw_config)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'EngineSettings':
        return cls(**config_dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def load_settings(config_path=None) -> EngineSettings:
    """
    Load settings from YAML, or the defaults when no path is given.

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist
        ValidationError: If the file contains invalid values
    """
    if config_path is None:
        return EngineSettings()
    return EngineSettings.from_yaml(config_path)
