"""
Value types shared by the acquisition and processing pipeline.

Samples, calibration profiles, phase segments and results are immutable once
created. ``TestSession`` is the one mutable record; only the session
coordinator changes it.
"""
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class TestPhase(Enum):
    __test__ = False

    IDLE = 'idle'
    QUIET_STANDING = 'quiet_standing'
    UNWEIGHTING = 'unweighting'
    BRAKING = 'braking'
    PROPULSION = 'propulsion'
    FLIGHT = 'flight'
    LANDING = 'landing'
    RECOVERY = 'recovery'
    ABORTED = 'aborted'


class TestType(Enum):
    __test__ = False

    COUNTERMOVEMENT_JUMP = 'CMJ'
    SQUAT_JUMP = 'SJ'
    ISOMETRIC_PULL = 'IMTP'
    BALANCE_HOLD = 'SB'


class WorkflowState(Enum):
    CONNECTING = 'connecting'
    CALIBRATING = 'calibrating'
    MEASURING_WEIGHT = 'measuring_weight'
    EXECUTING = 'executing'
    FINALIZING = 'finalizing'
    COMPLETE = 'complete'
    ABORTED = 'aborted'


class Quality(Enum):
    EXCELLENT = 'excellent'
    GOOD = 'good'
    FAIR = 'fair'
    POOR = 'poor'


@dataclass(frozen=True)
class ForceSample:
    """One timestamped reading from both plates (forces in N, moments in N·m)."""
    timestamp: float
    left_fz: float
    right_fz: float
    left_mx: float = 0.0
    left_my: float = 0.0
    right_mx: float = 0.0
    right_my: float = 0.0

    @property
    def total_fz(self) -> float:
        return self.left_fz + self.right_fz

    def as_tuple(self) -> Tuple[float, ...]:
        return (self.timestamp, self.left_fz, self.right_fz,
                self.left_mx, self.left_my, self.right_mx, self.right_my)

    def corrected(self, profile: 'CalibrationProfile') -> 'ForceSample':
        """Return a copy with the profile's zero offsets removed."""
        lmx, lmy, rmx, rmy = profile.moment_offsets
        return ForceSample(
            timestamp=self.timestamp,
            left_fz=self.left_fz - profile.left_offset,
            right_fz=self.right_fz - profile.right_offset,
            left_mx=self.left_mx - lmx,
            left_my=self.left_my - lmy,
            right_mx=self.right_mx - rmx,
            right_my=self.right_my - rmy,
        )


@dataclass(frozen=True)
class CalibrationProfile:
    left_offset: float
    right_offset: float
    noise_std_dev: float
    sample_count: int
    moment_offsets: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    left_noise_std: float = 0.0
    right_noise_std: float = 0.0


@dataclass(frozen=True)
class PhaseSegment:
    """Evidence for one phase: its time span and the sample indices it covers.

    ``end_index`` is exclusive. ``complete`` is False when the segment was cut
    short by an abort instead of a regular transition.
    """
    phase: TestPhase
    start_time: float
    end_time: float
    start_index: int
    end_index: int
    complete: bool = True

    @property
    def sample_indices(self) -> range:
        return range(self.start_index, self.end_index)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class PhaseTransition:
    """Emitted by the phase detector whenever the current phase changes."""
    previous: TestPhase
    current: TestPhase
    time: float
    index: int
    segment: Optional[PhaseSegment] = None
    reason: str = ''


@dataclass(frozen=True)
class SessionEvent:
    """Message posted to the presentation layer's event queue."""
    kind: str
    session_id: str
    timestamp: float
    payload: Mapping[str, Any] = field(default_factory=dict)


# ============================================================================
# Metric families
# ============================================================================

@dataclass(frozen=True)
class ForceMetrics:
    peak_force: Optional[float] = None
    time_to_peak_force_ms: Optional[float] = None
    relative_peak_force: Optional[float] = None
    rfd: Optional[float] = None
    impulse: Optional[float] = None
    impulse_braking: Optional[float] = None
    impulse_propulsion: Optional[float] = None
    peak_power: Optional[float] = None
    average_power: Optional[float] = None
    relative_power: Optional[float] = None  # Peak power per kg
    peak_landing_force: Optional[float] = None


@dataclass(frozen=True)
class JumpMetrics:
    jump_height_flight_time: Optional[float] = None
    jump_height_impulse: Optional[float] = None
    flight_time_ms: Optional[float] = None
    contact_time_ms: Optional[float] = None
    rsi_modified: Optional[float] = None
    takeoff_velocity: Optional[float] = None
    eccentric_duration_ms: Optional[float] = None
    concentric_duration_ms: Optional[float] = None


@dataclass(frozen=True)
class SymmetryMetrics:
    asymmetry_index: Optional[float] = None


@dataclass(frozen=True)
class CopMetrics:
    cop_range_left: Optional[float] = None
    cop_range_right: Optional[float] = None
    cop_path_left: Optional[float] = None
    cop_path_right: Optional[float] = None
    cop_velocity_left: Optional[float] = None
    cop_velocity_right: Optional[float] = None


# Stable export keys consumed by presentation/export collaborators
METRIC_KEYS = {
    'peak_force': 'peakForce',
    'time_to_peak_force_ms': 'timeToPeakForceMs',
    'relative_peak_force': 'relativePeakForce',
    'rfd': 'rfd',
    'impulse': 'impulse',
    'impulse_braking': 'impulseBraking',
    'impulse_propulsion': 'impulsePropulsion',
    'peak_power': 'peakPower',
    'average_power': 'averagePower',
    'relative_power': 'relativePower',
    'peak_landing_force': 'peakLandingForce',
    'jump_height_flight_time': 'jumpHeightFlightTime',
    'jump_height_impulse': 'jumpHeightImpulse',
    'flight_time_ms': 'flightTimeMs',
    'contact_time_ms': 'contactTimeMs',
    'rsi_modified': 'rsiModified',
    'takeoff_velocity': 'takeoffVelocity',
    'eccentric_duration_ms': 'eccentricDurationMs',
    'concentric_duration_ms': 'concentricDurationMs',
    'asymmetry_index': 'asymmetryIndex',
    'cop_range_left': 'copRangeLeft',
    'cop_range_right': 'copRangeRight',
    'cop_path_left': 'copPathLengthLeft',
    'cop_path_right': 'copPathLengthRight',
    'cop_velocity_left': 'copVelocityLeft',
    'cop_velocity_right': 'copVelocityRight',
}


@dataclass(frozen=True)
class MetricSet:
    force: ForceMetrics = field(default_factory=ForceMetrics)
    jump: JumpMetrics = field(default_factory=JumpMetrics)
    symmetry: SymmetryMetrics = field(default_factory=SymmetryMetrics)
    cop: CopMetrics = field(default_factory=CopMetrics)
    quality_score: Optional[float] = None

    def to_export_map(self) -> Dict[str, float]:
        """Flatten into the string-keyed map; metrics that were not computed are left out."""
        export = {}
        for family in (self.force, self.jump, self.symmetry, self.cop):
            for f in fields(family):
                value = getattr(family, f.name)
                if value is not None:
                    export[METRIC_KEYS[f.name]] = float(value)
        if self.quality_score is not None:
            export['qualityScore'] = float(self.quality_score)
        return export


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    session_id: str
    test_type: TestType
    metrics: Mapping[str, float]
    quality: Quality
    quality_score: float
    duration_ms: float
    created_at: datetime
    metric_set: MetricSet = field(default_factory=MetricSet)
    is_valid: bool = True
    aborted: bool = False
    missing_phases: Tuple[TestPhase, ...] = ()
    notes: Tuple[str, ...] = ()
    error: Optional[Exception] = None

    def __post_init__(self):
        # Read-only view so the frozen result cannot be edited through its map
        object.__setattr__(self, 'metrics', MappingProxyType(dict(self.metrics)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'testType': self.test_type.value,
            'metrics': dict(self.metrics),
            'quality': self.quality.name,
            'qualityScore': self.quality_score,
            'durationMs': self.duration_ms,
            'createdAt': self.created_at.isoformat(),
            'valid': self.is_valid,
            'aborted': self.aborted,
            'missingPhases': [p.name for p in self.missing_phases],
            'notes': list(self.notes),
        }


@dataclass
class TestSession:
    """State of one athlete test, owned by the session coordinator."""
    __test__ = False

    athlete_id: str
    test_type: TestType
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    body_weight: Optional[float] = None
    calibration: Optional[CalibrationProfile] = None
    current_phase: TestPhase = TestPhase.IDLE
    segments: List[PhaseSegment] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: WorkflowState = WorkflowState.CONNECTING
    sample_rate_hz: Optional[int] = None
    handle: Any = field(default=None, repr=False, compare=False)
    pipeline: Any = field(default=None, repr=False, compare=False)

