"""
Metric computation for one test execution.

Samples are appended to an in-memory trace as they arrive; per-segment
statistics are accumulated as each phase segment closes, and the final
metric set and quality score are produced once the test has ended.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import numpy as np

import config
from .models import (
    CopMetrics, ForceMetrics, JumpMetrics, MetricSet, PhaseSegment, Quality,
    SymmetryMetrics, TestPhase,
)
from .signal_math import (
    asymmetry_index, center_of_pressure, cop_path_length, cop_range, cumulative_integral,
    integrate_trapezoid, lowpass_filter, regression_slope,
)

logger = logging.getLogger(__name__)

# Trace columns
T, LFZ, RFZ, LMX, LMY, RMX, RMY = range(7)


class TraceBuffer:
    """
    Growable numpy buffer of the execution trace, one row per sample.
    Unlike the live-plot buffers nothing is discarded: every sample of a test
    is needed again at finalization.
    """

    def __init__(self, initial_capacity=4096, num_columns=7):
        self._data = np.empty((initial_capacity, num_columns), dtype=float)
        self._size = 0

    def __len__(self):
        return self._size

    def reset(self):
        self._size = 0

    def append(self, row):
        """Append one row and return its index."""
        if self._size == len(self._data):
            grown = np.empty((len(self._data) * 2, self._data.shape[1]), dtype=float)
            grown[:self._size] = self._data[:self._size]
            self._data = grown
        self._data[self._size] = row
        self._size += 1
        return self._size - 1

    def column(self, col, start=0, stop=None):
        stop = self._size if stop is None else min(stop, self._size)
        return self._data[start:stop, col]

    @property
    def data(self):
        return self._data[:self._size]


@dataclass(frozen=True)
class SegmentStats:
    """Statistics accumulated when a phase segment closes."""
    segment: PhaseSegment
    sample_count: int
    peak_force: Optional[float] = None
    time_to_peak_s: Optional[float] = None
    mean_force: Optional[float] = None
    net_impulse: float = 0.0
    left_integral: float = 0.0
    right_integral: float = 0.0
    cop_left: Tuple[np.ndarray, np.ndarray] = field(default=(np.zeros(0), np.zeros(0)), repr=False)
    cop_right: Tuple[np.ndarray, np.ndarray] = field(default=(np.zeros(0), np.zeros(0)), repr=False)

    @property
    def complete(self):
        return self.segment.complete


@dataclass(frozen=True)
class Evaluation:
    """Outcome of ``MetricsEngine.finalize``."""
    metric_set: MetricSet
    quality: Quality
    quality_score: float
    is_valid: bool
    missing_phases: Tuple[TestPhase, ...]
    notes: Tuple[str, ...]


def classify_quality(score: float) -> Quality:
    for name, threshold in config.QUALITY_THRESHOLDS:
        if score >= threshold:
            return Quality[name]
    return Quality.POOR


def _per_second(value, duration_s):
    if value is None or duration_s <= 0:
        return None
    return value / duration_s


class MetricsEngine:
    """
    Accumulates the trace and segment statistics for one session and turns
    them into metrics. Metrics are only derived from segments that completed
    normally; anything that depends on a missing or aborted segment is left
    out of the result.
    """

    def __init__(self, profile, body_weight, calibration, settings):
        """
        Args:
            profile: TestProfile of the running test
            body_weight: Bodyweight in N
            calibration: CalibrationProfile the trace was corrected with
            settings: EngineSettings
        """
        self.profile = profile
        self.body_weight = body_weight
        self.mass = body_weight / config.GRAVITY
        self.calibration = calibration
        self.settings = settings
        self.sample_rate = settings.sample_rate_hz

        self.trace = TraceBuffer(initial_capacity=max(1024, settings.queue_capacity))
        self.segment_stats: Dict[TestPhase, SegmentStats] = {}
        self.segments: List[PhaseSegment] = []

    def append(self, sample):
        """Add a calibrated sample to the trace and return its index."""
        return self.trace.append(sample.as_tuple())

    def close_segment(self, segment: PhaseSegment) -> SegmentStats:
        """Accumulate statistics for a segment that has just closed."""
        start = segment.start_index
        stop = min(segment.end_index, len(self.trace))
        times = self.trace.column(T, start, stop)
        left = self.trace.column(LFZ, start, stop)
        right = self.trace.column(RFZ, start, stop)
        total = left + right

        # Integrals include the boundary sample shared with the next segment
        int_stop = min(segment.end_index + 1, len(self.trace))
        int_times = self.trace.column(T, start, int_stop)
        int_left = self.trace.column(LFZ, start, int_stop)
        int_right = self.trace.column(RFZ, start, int_stop)

        if len(total) == 0:
            stats = SegmentStats(segment=segment, sample_count=0)
        else:
            peak_idx = int(np.argmax(total))
            stats = SegmentStats(
                segment=segment,
                sample_count=len(total),
                peak_force=float(total[peak_idx]),
                time_to_peak_s=float(times[peak_idx] - times[0]),
                mean_force=float(np.mean(total)),
                net_impulse=integrate_trapezoid(int_left + int_right - self.body_weight, int_times),
                left_integral=integrate_trapezoid(int_left, int_times),
                right_integral=integrate_trapezoid(int_right, int_times),
                cop_left=self._cop(LFZ, LMX, LMY, start, stop),
                cop_right=self._cop(RFZ, RMX, RMY, start, stop),
            )

        self.segments.append(segment)
        self.segment_stats[segment.phase] = stats
        logger.debug(
            f"{segment.phase.name} closed: {stats.sample_count} samples, "
            f"{segment.duration * 1000:.0f}ms, net impulse {stats.net_impulse:.1f}Ns"
        )
        return stats

    def _cop(self, fz_col, mx_col, my_col, start, stop):
        step = max(1, int(round(self.settings.cop_sample_interval_ms / 1000.0 * self.sample_rate)))
        fz = self.trace.column(fz_col, start, stop)[::step]
        mx = self.trace.column(mx_col, start, stop)[::step]
        my = self.trace.column(my_col, start, stop)[::step]
        return center_of_pressure(fz, mx, my, self.settings.cop_min_force_n)

    def _completed(self, *phases) -> bool:
        return all(p in self.segment_stats and self.segment_stats[p].complete for p in phases)

    def missing_phases(self) -> Tuple[TestPhase, ...]:
        return tuple(p for p in self.profile.mandatory if not self._completed(p))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self, missing_fraction=0.0, aborted=False) -> Evaluation:
        """
        Compute the metric set and quality score.

        Args:
            missing_fraction: Fraction of expected samples lost (drops and gaps)
            aborted: True when the test was cut short

        Returns:
            Evaluation
        """
        notes = []
        force = self._force_metrics()
        jump = self._jump_metrics(notes) if self.profile.is_jump else JumpMetrics()
        if self.profile.is_jump:
            force = replace(force, **self._power_metrics())
        symmetry = self._symmetry_metrics()
        cop = self._cop_metrics()

        missing = self.missing_phases()
        is_valid = not aborted and not missing

        score = self._quality_score(jump, symmetry, missing_fraction, notes)
        quality = classify_quality(score)
        metric_set = MetricSet(force=force, jump=jump, symmetry=symmetry, cop=cop,
                               quality_score=score)

        if missing:
            notes.append("Missing phases: " + ", ".join(p.name for p in missing))
        logger.info(
            f"Analysis complete: {len(metric_set.to_export_map())} metrics, "
            f"quality {quality.name} ({score:.1f})"
        )
        return Evaluation(
            metric_set=metric_set,
            quality=quality,
            quality_score=score,
            is_valid=is_valid,
            missing_phases=missing,
            notes=tuple(notes),
        )

    def _force_metrics(self) -> ForceMetrics:
        values = {}
        peak_phases = self.profile.peak_phases
        if self._completed(*peak_phases):
            first = self.segment_stats[peak_phases[0]].segment
            last = self.segment_stats[peak_phases[-1]].segment
            times = self.trace.column(T, first.start_index, last.end_index)
            total = self.trace.column(LFZ, first.start_index, last.end_index) + \
                self.trace.column(RFZ, first.start_index, last.end_index)
            if len(total):
                filtered = lowpass_filter(total, self.sample_rate,
                                          self.settings.filter_cutoff_hz, self.settings.filter_order)
                peak_idx = int(np.argmax(filtered))
                values['peak_force'] = float(filtered[peak_idx])
                values['time_to_peak_force_ms'] = float(times[peak_idx] - times[0]) * 1000.0
                values['relative_peak_force'] = values['peak_force'] / self.mass

        if self._completed(TestPhase.BRAKING):
            values['impulse_braking'] = self.segment_stats[TestPhase.BRAKING].net_impulse

        if self._completed(TestPhase.PROPULSION):
            propulsion = self.segment_stats[TestPhase.PROPULSION]
            values['impulse'] = propulsion.net_impulse
            values['impulse_propulsion'] = propulsion.net_impulse
            values['rfd'] = self._rfd(propulsion.segment)

        if self._completed(TestPhase.LANDING):
            values['peak_landing_force'] = self.segment_stats[TestPhase.LANDING].peak_force

        return ForceMetrics(**values)

    def _rfd(self, segment) -> Optional[float]:
        times = self.trace.column(T, segment.start_index, segment.end_index)
        if len(times) == 0:
            return None
        window = times <= times[0] + self.settings.rfd_window_ms / 1000.0
        total = self.trace.column(LFZ, segment.start_index, segment.end_index) + \
            self.trace.column(RFZ, segment.start_index, segment.end_index)
        return regression_slope(times[window], total[window])

    def _movement_phases(self):
        """Phases from quiet standing up to and including propulsion."""
        seq = self.profile.sequence
        if TestPhase.PROPULSION not in seq:
            return None
        return seq[:seq.index(TestPhase.PROPULSION) + 1]

    def _velocity_trace(self):
        """
        Centre-of-mass velocity from movement onset to takeoff.

        Integration starts at the last quiet-standing sample (velocity zero)
        and runs to the first flight sample.

        Returns:
            (first trace index, forces, velocity), or None when the movement is incomplete
        """
        phases = self._movement_phases()
        if phases is None or not self._completed(*phases):
            return None
        onset = self.segment_stats[TestPhase.QUIET_STANDING].segment.end_index
        takeoff = self.segment_stats[TestPhase.PROPULSION].segment.end_index
        start = max(onset - 1, 0)
        stop = min(takeoff + 1, len(self.trace))
        times = self.trace.column(T, start, stop)
        total = self.trace.column(LFZ, start, stop) + self.trace.column(RFZ, start, stop)
        velocity = cumulative_integral((total - self.body_weight) / self.mass, times)
        return start, total, velocity

    def _power_metrics(self) -> Dict[str, float]:
        """Peak and mean of F·v over propulsion, and peak power per kg."""
        trace = self._velocity_trace()
        if trace is None:
            return {}
        start, total, velocity = trace
        offset = self.segment_stats[TestPhase.PROPULSION].segment.start_index - start
        power = total[offset:] * velocity[offset:]
        if len(power) == 0:
            return {}
        peak = float(np.max(power))
        return {
            'peak_power': peak,
            'average_power': float(np.mean(power)),
            'relative_power': peak / self.mass,
        }

    def _jump_metrics(self, notes) -> JumpMetrics:
        values = {}
        g = config.GRAVITY

        if self._completed(TestPhase.FLIGHT):
            flight_time = self.segment_stats[TestPhase.FLIGHT].segment.duration
            if flight_time < config.MIN_FLIGHT_TIME or flight_time > config.MAX_FLIGHT_TIME:
                logger.warning(f"NOTICE: Flight time {flight_time:.3f}s outside expected range")
                notes.append("Flight time outside typical range.")
            values['flight_time_ms'] = flight_time * 1000.0
            values['jump_height_flight_time'] = g * flight_time ** 2 / 8.0

        trace = self._velocity_trace()
        if trace is not None:
            takeoff_velocity = float(trace[2][-1])
            values['takeoff_velocity'] = takeoff_velocity
            if takeoff_velocity <= 0:
                notes.append("Negative takeoff velocity, impulse height set to 0.")
            values['jump_height_impulse'] = max(takeoff_velocity, 0.0) ** 2 / (2 * g)

            onset_time = self.segment_stats[TestPhase.QUIET_STANDING].segment.end_time
            takeoff_time = self.segment_stats[TestPhase.PROPULSION].segment.end_time
            contact_time = takeoff_time - onset_time
            values['contact_time_ms'] = contact_time * 1000.0

            height = values.get('jump_height_flight_time', values['jump_height_impulse'])
            if contact_time > 0:
                values['rsi_modified'] = height / contact_time

        eccentric = [p for p in (TestPhase.UNWEIGHTING, TestPhase.BRAKING) if p in self.profile.sequence]
        if eccentric and self._completed(*eccentric):
            values['eccentric_duration_ms'] = 1000.0 * sum(
                self.segment_stats[p].segment.duration for p in eccentric)
        if self._completed(TestPhase.PROPULSION):
            values['concentric_duration_ms'] = 1000.0 * self.segment_stats[TestPhase.PROPULSION].segment.duration

        return JumpMetrics(**values)

    def _symmetry_metrics(self) -> SymmetryMetrics:
        phase = self.profile.asymmetry_phase
        if not self._completed(phase):
            return SymmetryMetrics()
        stats = self.segment_stats[phase]
        return SymmetryMetrics(asymmetry_index=asymmetry_index(stats.left_integral, stats.right_integral))

    def _cop_metrics(self) -> CopMetrics:
        # Stance sway is taken from quiet standing for every test type
        if not self._completed(TestPhase.QUIET_STANDING):
            return CopMetrics()
        stats = self.segment_stats[TestPhase.QUIET_STANDING]
        duration = stats.segment.duration
        return CopMetrics(
            cop_range_left=cop_range(*stats.cop_left),
            cop_range_right=cop_range(*stats.cop_right),
            cop_path_left=cop_path_length(*stats.cop_left),
            cop_path_right=cop_path_length(*stats.cop_right),
            cop_velocity_left=_per_second(cop_path_length(*stats.cop_left), duration),
            cop_velocity_right=_per_second(cop_path_length(*stats.cop_right), duration),
        )

    # ------------------------------------------------------------------
    # Quality
    # ------------------------------------------------------------------

    def _quality_score(self, jump, symmetry, missing_fraction, notes) -> float:
        s = self.settings
        criteria = {}

        mandatory = self.profile.mandatory
        done = sum(1 for p in mandatory if self._completed(p))
        criteria['phases'] = 100.0 * done / len(mandatory)

        heights = (jump.jump_height_flight_time, jump.jump_height_impulse)
        if self.profile.is_jump and None not in heights and max(heights) > 0:
            relative = abs(heights[0] - heights[1]) / max(heights)
            tol = s.height_agreement_tolerance
            criteria['height_agreement'] = 100.0 * min(1.0, max(0.0, 2.0 - relative / tol))
            if relative > tol:
                notes.append(f"Jump height estimates differ by {relative * 100:.1f}%.")

        noise = self.calibration.noise_std_dev if self.calibration else 0.0
        criteria['noise'] = 100.0 * max(0.0, 1.0 - noise / s.calibration_noise_ceiling_n)

        if symmetry.asymmetry_index is not None:
            ai = symmetry.asymmetry_index
            span = s.asymmetry_error_pct - s.asymmetry_warning_pct
            criteria['asymmetry'] = 100.0 * min(1.0, max(0.0, (s.asymmetry_error_pct - ai) / span))
            if ai > s.asymmetry_warning_pct:
                notes.append(f"Asymmetry {ai:.1f}% above {s.asymmetry_warning_pct:.0f}%.")

        weights = {name: s.quality_weights.get(name, 0.0) for name in criteria}
        total_weight = sum(weights.values())
        if total_weight <= 0:
            score = criteria['phases']
        else:
            score = sum(criteria[name] * w for name, w in weights.items()) / total_weight

        if missing_fraction > 0:
            saturation = s.max_missing_sample_pct / 100.0
            penalty = s.missing_sample_penalty * min(missing_fraction / saturation, 1.0)
            score -= penalty
            notes.append(f"{missing_fraction * 100:.2f}% of samples missing.")

        return float(min(max(score, 0.0), 100.0))
