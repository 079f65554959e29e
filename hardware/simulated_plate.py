"""
Simulated dual force plate.

Replays prepared sample traces through the regular producer thread, so the
whole pipeline can run without hardware. The trace builders generate
physically consistent force-time curves: the simulated takeoff velocity is
integrated from the generated propulsion and the flight lasts 2v/g.
"""
import logging
import time

import numpy as np

import config
from processing.errors import ConnectTimeoutError, DeviceNotFoundError, LinkDroppedError
from processing.models import ForceSample, TestType
from .device_link import DeviceLink

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_ID = 'sim-0'


class SimulatedForcePlate(DeviceLink):
    """
    Replays a fixed list of samples per device id.

    Args:
        traces: Mapping of device id to a list of ForceSample, or a single list
            registered under ``DEFAULT_DEVICE_ID``
        realtime: Pace the replay to the sample timestamps. Otherwise the
            replay runs as fast as the consumer takes samples, and no sample
            is dropped
        drop_at_index: Drop the link after this many samples
        hold_open: After the last sample keep the link open without data
            instead of ending the stream
        unreachable: Device ids that exist but never answer
    """

    def __init__(self, traces, realtime=False, drop_at_index=None, hold_open=False,
                 unreachable=(), chunk_size=config.DAQ_READ_CHUNK_SIZE, **kwargs):
        super().__init__(**kwargs)
        if not isinstance(traces, dict):
            traces = {DEFAULT_DEVICE_ID: traces}
        self.traces = traces
        self.realtime = realtime
        self.drop_at_index = drop_at_index
        self.hold_open = hold_open
        self.unreachable = set(unreachable)
        self.chunk_size = chunk_size

    def _open(self, handle):
        if handle.device_id in self.unreachable:
            raise ConnectTimeoutError(handle.device_id, self.stream_timeout_s)
        if handle.device_id not in self.traces:
            raise DeviceNotFoundError(handle.device_id)
        handle.device_state = list(self.traces[handle.device_id])
        logger.info(f"Simulated device '{handle.device_id}' ready: {len(handle.device_state)} samples")

    def _acquire(self, handle):
        samples = handle.device_state
        stop = len(samples) if self.drop_at_index is None else min(self.drop_at_index, len(samples))
        start_wall = time.monotonic()
        t0 = samples[0].timestamp if samples else 0.0

        # An unpaced chunk has to fit the channel in one piece
        step = self.chunk_size if self.realtime else min(self.chunk_size, handle.channel.capacity)
        for begin in range(0, stop, step):
            chunk = samples[begin:min(begin + step, stop)]
            if self.realtime:
                # Release the chunk once its last sample would have been measured
                due = start_wall + (chunk[-1].timestamp - t0)
                delay = due - time.monotonic()
                if delay > 0 and self.wait_stopped(handle, delay):
                    return
            else:
                # Unpaced replay waits for the consumer instead of dropping samples
                while not handle.channel.wait_for_room(len(chunk), timeout=0.1):
                    if handle._stop_event.is_set():
                        return
            yield chunk

        if self.drop_at_index is not None and self.drop_at_index < len(samples):
            raise LinkDroppedError(f"simulated link drop at sample {self.drop_at_index}")
        if self.hold_open:
            self.wait_stopped(handle)


# ============================================================================
# Trace builders
# ============================================================================

def _half_sine(duration, rate):
    n = max(1, int(round(duration * rate)))
    return np.sin(np.pi * (np.arange(n) + 0.5) / n)


def _ramp(start, end, duration, rate):
    n = max(1, int(round(duration * rate)))
    return np.linspace(start, end, n, endpoint=False)


def _takeoff_velocity(force, body_weight, rate):
    """Velocity at the end of ``force`` for a mass starting at rest."""
    mass = body_weight / config.GRAVITY
    return float(np.sum(force - body_weight) / rate / mass)


def _landing(body_weight, rate, peak_factor=2.5, rise_s=0.05, settle_s=0.3):
    rise = body_weight * peak_factor * np.sin(0.5 * np.pi * np.arange(1, int(rise_s * rate) + 1) /
                                              int(rise_s * rate))
    n_settle = int(settle_s * rate)
    progress = np.arange(1, n_settle + 1) / n_settle
    settle = body_weight + (peak_factor - 1.0) * body_weight * 0.5 * (1 + np.cos(np.pi * progress))
    return np.concatenate([rise, settle])


def countermovement_profile(body_weight, rate, unweight_factor=0.6, unweight_s=0.3,
                            drive_factor=1.3, drive_s=0.45, release_s=0.05):
    """
    Total vertical force of a countermovement jump, from movement onset to landing settle.

    Returns:
        (force array, takeoff velocity in m/s)
    """
    unweight = body_weight * (1.0 - unweight_factor * _half_sine(unweight_s, rate))
    drive = body_weight * (1.0 + drive_factor * _half_sine(drive_s, rate))
    release = _ramp(body_weight, 0.0, release_s, rate)
    contact = np.concatenate([unweight, drive, release])
    return contact, _takeoff_velocity(contact, body_weight, rate)


def squat_jump_profile(body_weight, rate, drive_factor=0.9, drive_s=0.35, release_s=0.05):
    drive = body_weight * (1.0 + drive_factor * _half_sine(drive_s, rate))
    release = _ramp(body_weight, 0.0, release_s, rate)
    contact = np.concatenate([drive, release])
    return contact, _takeoff_velocity(contact, body_weight, rate)


def _jump_movement(contact, takeoff_velocity, body_weight, rate):
    flight_s = max(2.0 * takeoff_velocity / config.GRAVITY, 0.0)
    flight = np.zeros(int(round(flight_s * rate)))
    return np.concatenate([contact, flight, _landing(body_weight, rate)])


def isometric_pull_profile(body_weight, rate, peak_factor=2.5, rise_s=0.3, hold_s=2.0, release_s=0.3):
    n_rise = int(rise_s * rate)
    rise = body_weight + (peak_factor - 1.0) * body_weight * (1 - np.exp(-5.0 * np.arange(n_rise) / n_rise))
    hold = np.full(int(hold_s * rate), rise[-1])
    release = _ramp(rise[-1], body_weight, release_s, rate)
    return np.concatenate([rise, hold, release])


def movement_profile(test_type, body_weight, rate):
    """
    Total vertical force of the test movement itself.

    Returns:
        (force array, takeoff velocity in m/s or None for non-jumps)
    """
    if test_type is TestType.COUNTERMOVEMENT_JUMP:
        contact, v = countermovement_profile(body_weight, rate)
        return _jump_movement(contact, v, body_weight, rate), v
    if test_type is TestType.SQUAT_JUMP:
        contact, v = squat_jump_profile(body_weight, rate)
        return _jump_movement(contact, v, body_weight, rate), v
    if test_type is TestType.ISOMETRIC_PULL:
        return isometric_pull_profile(body_weight, rate), None
    if test_type is TestType.BALANCE_HOLD:
        return np.zeros(0), None
    raise ValueError(f"Unknown test type: {test_type}")


def build_trace(test_type, body_mass_kg=75.0, sample_rate=config.SAMPLE_RATE, seed=None,
                noise_std=1.0, asymmetry_pct=0.0, plate_offsets=(15.0, -10.0),
                moment_offsets=(0.5, -0.3, 0.2, 0.1), unloaded_s=config.CALIBRATION_DURATION_S,
                step_on_s=0.5, standing_s=4.0, settle_s=1.5, sway_m=0.005,
                balance_hold_s=config.BALANCE_HOLD_DURATION_S):
    """
    Build a complete raw session trace: unloaded plates, step on, quiet
    standing, the test movement, and standing afterwards.

    Args:
        test_type: TestType to simulate
        body_mass_kg: Athlete mass
        sample_rate: Samples per second
        seed: Seed for the noise generator; the same seed gives the same trace
        noise_std: Gaussian noise per vertical channel (N)
        asymmetry_pct: Left/right asymmetry index of the load split
        plate_offsets: Raw zero offsets of the left and right Fz channels (N)
        moment_offsets: Raw zero offsets of the four moment channels (N·m)
        unloaded_s: Duration of the empty-plate window at the start
        step_on_s: Duration of the step-on ramp
        standing_s: Quiet standing before the movement
        settle_s: Standing after the movement
        sway_m: Amplitude of the simulated COP sway
        balance_hold_s: Quiet standing length for balance holds

    Returns:
        list of ForceSample with timestamps starting at 0.0
    """
    rng = np.random.default_rng(seed)
    bw = body_mass_kg * config.GRAVITY
    rate = sample_rate

    movement, _ = movement_profile(test_type, bw, rate)
    if test_type is TestType.BALANCE_HOLD:
        standing_s = standing_s + balance_hold_s

    total = np.concatenate([
        np.zeros(int(unloaded_s * rate)),
        _ramp(0.0, bw, step_on_s, rate),
        np.full(int(standing_s * rate), bw),
        movement,
        np.full(int(settle_s * rate), bw),
    ])
    return split_trace(total, rate, rng, noise_std=noise_std, asymmetry_pct=asymmetry_pct,
                       plate_offsets=plate_offsets, moment_offsets=moment_offsets, sway_m=sway_m)


def split_trace(total, sample_rate, rng=None, noise_std=0.0, asymmetry_pct=0.0,
                plate_offsets=(0.0, 0.0), moment_offsets=(0.0, 0.0, 0.0, 0.0), sway_m=0.0):
    """
    Turn a total vertical force curve into two-plate samples.

    The load is split so the left/right asymmetry index equals
    ``asymmetry_pct`` (left carries more), each plate gets its own noise and
    offset, and moments follow a slow COP sway.
    """
    rng = rng if rng is not None else np.random.default_rng(0)
    total = np.asarray(total, dtype=float)
    n = len(total)
    t = np.arange(n) / sample_rate

    left_share = 0.5 + asymmetry_pct / 200.0
    left = total * left_share
    right = total * (1.0 - left_share)

    cop_lx = sway_m * np.sin(2 * np.pi * 0.4 * t)
    cop_ly = sway_m * np.cos(2 * np.pi * 0.3 * t)
    cop_rx = sway_m * np.sin(2 * np.pi * 0.35 * t + 1.0)
    cop_ry = sway_m * np.cos(2 * np.pi * 0.25 * t + 0.5)

    def noise():
        return rng.normal(0.0, noise_std, n) if noise_std > 0 else np.zeros(n)

    lfz = left + plate_offsets[0] + noise()
    rfz = right + plate_offsets[1] + noise()
    lmx = left * cop_lx + moment_offsets[0] + noise() * 0.01
    lmy = left * cop_ly + moment_offsets[1] + noise() * 0.01
    rmx = right * cop_rx + moment_offsets[2] + noise() * 0.01
    rmy = right * cop_ry + moment_offsets[3] + noise() * 0.01

    rows = np.column_stack([t, lfz, rfz, lmx, lmy, rmx, rmy])
    return [ForceSample(*map(float, row)) for row in rows]
