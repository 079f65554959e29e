"""
Real-time phase detection on the calibrated total vertical force.
Classifies the movement into phases following the test's transition table
and reports each phase change as it is confirmed.
"""
import logging

import config
from .models import PhaseSegment, PhaseTransition, TestPhase
from .signal_math import trapezoid_step

logger = logging.getLogger(__name__)


class PhaseDetector:
    """
    One detector per session. Feed it calibrated samples in order; it returns
    the transitions each sample confirms.

    A condition has to hold continuously for its dwell time before the
    transition is accepted; the new phase is then back-dated to the first
    qualifying sample. Only the next phase of the transition table is ever
    tested, so out-of-order signal conditions are ignored, and every phase is
    bounded by a maximum duration after which the detector aborts.
    """

    def __init__(self, profile, body_weight, noise_std_dev, settings):
        """
        Initialize phase detector.

        Args:
            profile: TestProfile with the phase sequence for this test type
            body_weight: Measured bodyweight in N
            noise_std_dev: Calibration noise (N), widens the quiet band
            settings: EngineSettings with thresholds and dwell times
        """
        if body_weight <= 0:
            raise ValueError(f"Bodyweight must be positive, got {body_weight}")

        self.profile = profile
        self.body_weight = body_weight
        self.mass = body_weight / config.GRAVITY
        self.settings = settings

        # Thresholds
        self.quiet_band = max(settings.unweighting_sigma_k * noise_std_dev, settings.quiet_band_floor_n)
        self.flight_threshold = settings.flight_force_threshold_n
        self.recovery_band = settings.recovery_band_fraction * body_weight

        self.phase = TestPhase.IDLE
        self.history = []  # Phases entered, in order
        self.velocity = 0.0
        self.abort_reason = None

        self._index = -1
        self._last_time = None
        self._last_force = None
        self._previous_velocity = 0.0
        self._phase_start_index = 0
        self._phase_start_time = None
        self._phase_peak = 0.0
        self._candidate = None  # (index, time) where the pending condition started
        self._terminal_closed = False

    @property
    def is_terminal(self):
        return self.phase in (self.profile.terminal_phase, TestPhase.ABORTED)

    @property
    def sample_count(self):
        return self._index + 1

    def process(self, sample):
        """
        Process one calibrated sample.

        Args:
            sample: ForceSample after zero-offset correction

        Returns:
            list: PhaseTransition events confirmed by this sample (usually empty)
        """
        if self.is_terminal:
            return []

        self._index += 1
        t = sample.timestamp
        force = sample.total_fz
        transitions = []

        if self.phase is TestPhase.IDLE:
            transitions.append(self._enter(self.profile.sequence[0], self._index, t, None))
            self._last_time = t
            self._last_force = force
            self._phase_peak = force
            return transitions

        self._update_velocity(t, force)
        self._phase_peak = max(self._phase_peak, force)

        target = self.profile.next_phase(self.phase)
        if target is not None:
            holds, dwell_s = self._condition(self.phase, target, t, force)
            if holds:
                if self._candidate is None:
                    self._candidate = (self._index, t)
                start_index, start_time = self._candidate
                if t - start_time >= dwell_s - 1e-9:
                    transitions.append(self._advance(target, start_index, start_time, t))
            else:
                self._candidate = None

        if not self.is_terminal and self._phase_start_time is not None:
            limit = self.settings.max_phase_duration_s(self.phase)
            if t - self._phase_start_time > limit:
                logger.warning(
                    f"{self.phase.name} exceeded {limit * 1000:.0f}ms without the expected transition"
                )
                self._last_time = t
                transitions.append(self.abort(f"{self.phase.name.lower()} timeout"))

        self._last_time = t
        self._last_force = force
        return transitions

    def _update_velocity(self, t, force):
        dt = t - self._last_time
        self._previous_velocity = self.velocity
        if self.phase is TestPhase.QUIET_STANDING and abs(force - self.body_weight) <= self.quiet_band:
            # Still inside the quiet band: no movement yet, keep the integral anchored
            self.velocity = 0.0
            return
        net_previous = self._last_force - self.body_weight
        net_current = force - self.body_weight
        self.velocity += trapezoid_step(net_previous, net_current, dt) / self.mass

    def _condition(self, phase, target, t, force):
        """Return (condition holds, dwell in seconds) for phase -> target."""
        s = self.settings
        bw = self.body_weight

        if phase is TestPhase.QUIET_STANDING:
            if target is TestPhase.UNWEIGHTING:
                return force < bw - self.quiet_band, s.onset_dwell_ms / 1000.0
            if target is TestPhase.PROPULSION:
                return force > bw + self.quiet_band, s.onset_dwell_ms / 1000.0
            if target is TestPhase.RECOVERY:
                return t - self._phase_start_time >= s.balance_hold_duration_s, 0.0

        if phase is TestPhase.UNWEIGHTING and target is TestPhase.BRAKING:
            # Downward velocity has peaked and is heading back toward zero
            rising = self.velocity > self._previous_velocity
            return self.velocity < 0 and rising, s.velocity_dwell_ms / 1000.0

        if phase is TestPhase.BRAKING and target is TestPhase.PROPULSION:
            return self.velocity > 0 and force > bw, s.velocity_dwell_ms / 1000.0

        if target is TestPhase.FLIGHT:
            return force < self.flight_threshold, s.flight_dwell_ms / 1000.0

        if target is TestPhase.LANDING:
            return force >= self.flight_threshold, s.landing_dwell_ms / 1000.0

        if target is TestPhase.RECOVERY:
            settled = abs(force - bw) <= self.recovery_band
            if phase is TestPhase.PROPULSION:
                # An isometric effort has to rise above the band before it can settle back
                settled = settled and self._phase_peak > bw + self.recovery_band
            return settled, s.recovery_dwell_ms / 1000.0

        return False, 0.0

    def _advance(self, target, start_index, start_time, now):
        segment = PhaseSegment(
            phase=self.phase,
            start_time=self._phase_start_time,
            end_time=start_time,
            start_index=self._phase_start_index,
            end_index=start_index,
            complete=True,
        )
        logger.debug(
            f"Phase transition {self.phase.name} -> {target.name} at t={start_time:.3f}s "
            f"(confirmed at {now:.3f}s, v={self.velocity:.3f}m/s)"
        )
        return self._enter(target, start_index, start_time, segment)

    def _enter(self, phase, index, time, closed_segment, reason=''):
        previous = self.phase
        self.phase = phase
        self.history.append(phase)
        self._phase_start_index = index
        self._phase_start_time = time
        self._phase_peak = self._last_force if self._last_force is not None else 0.0
        self._candidate = None
        return PhaseTransition(
            previous=previous, current=phase, time=time, index=index,
            segment=closed_segment, reason=reason,
        )

    def abort(self, reason):
        """
        Force the detector into ABORTED, closing the current segment as incomplete.

        Returns:
            PhaseTransition, or None when already terminal
        """
        if self.is_terminal:
            return None
        segment = self._open_segment(complete=False)
        self.abort_reason = reason
        logger.info(f"Phase detection aborted in {self.phase.name}: {reason}")
        end_time = self._last_time if self._last_time is not None else 0.0
        return self._enter(TestPhase.ABORTED, self._index + 1, end_time, segment, reason)

    def stop(self):
        """
        Force the terminal phase on an explicit stop request.

        When every mandatory phase has been entered the current segment closes
        normally and the detector moves to the terminal phase; otherwise the
        stop is an abort.

        Returns:
            PhaseTransition, or None when already terminal
        """
        if self.is_terminal:
            return None
        if self.phase is not TestPhase.IDLE and self.profile.has_reached(
                self.phase, self.profile.last_mandatory_phase):
            segment = self._open_segment(complete=True)
            logger.info(f"Stop requested in {self.phase.name}; closing the test")
            return self._enter(self.profile.terminal_phase, self._index + 1, self._last_time,
                               segment, 'stopped')
        return self.abort(f"stopped during {self.phase.name.lower()}")

    def close_terminal_segment(self):
        """
        Close the terminal phase's segment at the last processed sample.

        Returns:
            PhaseSegment, or None if there is nothing to close
        """
        if self.phase is not self.profile.terminal_phase or self._terminal_closed:
            return None
        self._terminal_closed = True
        if self._phase_start_index > self._index:
            return None  # Entered on a stop, no samples of its own
        return self._open_segment(complete=True)

    def _open_segment(self, complete):
        if self.phase is TestPhase.IDLE:
            return None
        return PhaseSegment(
            phase=self.phase,
            start_time=self._phase_start_time,
            end_time=self._last_time,
            start_index=self._phase_start_index,
            end_index=self._index + 1,
            complete=complete,
        )
