"""
Zero-offset calibration of the unloaded plates and bodyweight measurement.

Calibration is a blocking, one-shot step that gates the rest of the
pipeline: nothing reaches the phase detector before a CalibrationProfile
exists. Bodyweight is then measured on the calibrated stream with a
stability state machine.
"""
import itertools
import logging
import math

import numpy as np

from .errors import ExcessiveNoiseError, InsufficientCalibrationError, UnstableWeightError
from .models import CalibrationProfile, ForceSample

logger = logging.getLogger(__name__)


class CalibrationEngine:
    """
    Computes per-channel zero offsets and noise from a quiet, unloaded window.
    Never returns a profile whose noise is above the configured ceiling.
    """

    def __init__(self, settings):
        """
        Args:
            settings: EngineSettings providing rate, duration and noise ceiling
        """
        self.sample_rate = settings.sample_rate_hz
        self.duration_s = settings.calibration_duration_s
        self.noise_ceiling = settings.calibration_noise_ceiling_n

    @property
    def required_samples(self):
        return max(2, int(round(self.duration_s * self.sample_rate)))

    def calibrate(self, samples):
        """
        Consume the first ``required_samples`` samples and build a profile.

        Args:
            samples: Iterable of raw ForceSample taken with the plates unloaded

        Returns:
            CalibrationProfile

        Raises:
            InsufficientCalibrationError: The samples ran out before the window was full
            ExcessiveNoiseError: Worst vertical channel noise is above the ceiling
        """
        needed = self.required_samples
        window = [s.as_tuple() for s in itertools.islice(samples, needed)]
        if len(window) < needed:
            logger.error(f"Calibration stopped after {len(window)} of {needed} samples")
            raise InsufficientCalibrationError(needed, len(window))

        data = np.asarray(window, dtype=float)[:, 1:]  # Drop the timestamp column
        means = data.mean(axis=0)
        stds = data.std(axis=0)
        left_std, right_std = float(stds[0]), float(stds[1])
        noise = max(left_std, right_std)

        if not math.isfinite(noise) or noise > self.noise_ceiling:
            logger.warning(
                f"Calibration rejected: noise {noise:.2f}N (L={left_std:.2f}N, R={right_std:.2f}N), "
                f"ceiling {self.noise_ceiling:.2f}N"
            )
            raise ExcessiveNoiseError(noise, self.noise_ceiling)

        profile = CalibrationProfile(
            left_offset=float(means[0]),
            right_offset=float(means[1]),
            noise_std_dev=noise,
            sample_count=len(window),
            moment_offsets=tuple(float(m) for m in means[2:6]),
            left_noise_std=left_std,
            right_noise_std=right_std,
        )
        logger.info(
            f"Zero offset updated: L={profile.left_offset:.2f}N R={profile.right_offset:.2f}N, "
            f"noise {noise:.2f}N over {len(window)} samples"
        )
        return profile

    @staticmethod
    def apply(profile: CalibrationProfile, sample: ForceSample) -> ForceSample:
        """calibrated = raw - offset, on every channel."""
        return sample.corrected(profile)


class BodyweightMeter:
    """
    Bodyweight measurement with a state machine: wait for the athlete to
    step on, then keep a window of total force that restarts whenever its
    spread exceeds the stability threshold. Once the window spans the
    required duration, bodyweight is its mean.
    """

    PHASE_WAITING = 0  # Waiting for person to step on plate
    PHASE_STABILIZING = 1  # Person on plate, collecting a stable window
    PHASE_MEASURED = 2  # Bodyweight measured

    def __init__(self, settings):
        self._presence_threshold = settings.presence_threshold_n
        self._stability_threshold = settings.weight_stability_threshold_n
        self._window_duration = settings.weight_stability_duration_s
        self._timeout = settings.weight_timeout_s
        self._min_body_weight = settings.min_body_weight_n
        self.reset()

    def reset(self):
        self.state = self.PHASE_WAITING
        self.body_weight = None
        self.weight_std = None
        self._first_time = None
        self._restart_window(None)

    def _restart_window(self, sample):
        self._window_start = None
        self._n = 0
        self._sum = 0.0
        self._sum_sq = 0.0
        if sample is not None:
            self._window_start = sample.timestamp
            self._accumulate(sample.total_fz)

    def _accumulate(self, force):
        self._n += 1
        self._sum += force
        self._sum_sq += force * force

    def _window_std(self):
        mean = self._sum / self._n
        variance = max(self._sum_sq / self._n - mean * mean, 0.0)
        return math.sqrt(variance)

    def process(self, sample: ForceSample):
        """
        Feed one calibrated sample.

        Returns:
            bool: True once bodyweight has been measured

        Raises:
            UnstableWeightError: No stable window within the timeout, or the
                measured weight is implausibly low
        """
        if self.state == self.PHASE_MEASURED:
            return True

        if self._first_time is None:
            self._first_time = sample.timestamp
        elapsed = sample.timestamp - self._first_time
        if elapsed > self._timeout:
            logger.warning(f"No stable bodyweight within {self._timeout:.1f}s")
            raise UnstableWeightError("no stable window before timeout", timeout_s=self._timeout)

        force = sample.total_fz

        # STATE: Waiting for person to step on the plate
        if self.state == self.PHASE_WAITING:
            if force > self._presence_threshold:
                self.state = self.PHASE_STABILIZING
                self._restart_window(sample)
                logger.info("Person detected on force plate. Please stand still.")
            return False

        # STATE: Collecting a stable window
        if force < self._presence_threshold:
            # Person stepped off - go back to waiting
            self.state = self.PHASE_WAITING
            self._restart_window(None)
            logger.info("Person stepped off. Step on the plate to begin.")
            return False

        self._accumulate(force)
        if self._window_std() > self._stability_threshold:
            # Too much movement, restart the window from this sample
            self._restart_window(sample)
            logger.debug("Please stand still for accurate bodyweight measurement")
            return False

        if sample.timestamp - self._window_start >= self._window_duration:
            weight = self._sum / self._n
            if weight < self._min_body_weight:
                raise UnstableWeightError(
                    "bodyweight below minimum", body_weight=round(weight, 1),
                    minimum=self._min_body_weight
                )
            self.body_weight = weight
            self.weight_std = self._window_std()
            self.state = self.PHASE_MEASURED
            logger.info(f"Bodyweight calibration complete: {weight:.1f}N (sd {self.weight_std:.2f}N)")
            return True
        return False

    def measure(self, samples):
        """
        Run the state machine over ``samples`` until a bodyweight is found.

        Raises:
            UnstableWeightError: Timeout, implausible weight, or the samples ran out
        """
        for sample in samples:
            if self.process(sample):
                return self.body_weight
        raise UnstableWeightError("sample stream ended before a stable window")
