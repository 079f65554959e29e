"""
Pytest configuration and shared fixtures for the force plate engine tests.

Provides synthetic force curves, calibration profiles and a helper that
pushes samples through the measurement pipeline.
"""

import queue

import numpy as np
import pytest

import config
from hardware.simulated_plate import SimulatedForcePlate, build_trace, movement_profile, split_trace
from processing.models import CalibrationProfile, ForceSample, TestSession, TestType
from processing.session_coordinator import MeasurementPipeline, SessionCoordinator
from settings import EngineSettings

BODY_MASS_KG = 75.0
BODY_WEIGHT = BODY_MASS_KG * config.GRAVITY
SAMPLE_RATE = 1000


# ============================================================================
# Settings and calibration
# ============================================================================

@pytest.fixture
def settings():
    """Default engine settings"""
    return EngineSettings()


@pytest.fixture
def zero_calibration():
    """Calibration of a perfectly zeroed, noise-free plate"""
    return CalibrationProfile(left_offset=0.0, right_offset=0.0, noise_std_dev=0.0, sample_count=2500)


# ============================================================================
# Synthetic curves
# ============================================================================

@pytest.fixture
def force_curve():
    """
    Build two-plate samples of standing, the movement of ``test_type`` and
    standing afterwards. Noise free unless ``noise_std`` is given.
    """
    def build(test_type, body_weight=BODY_WEIGHT, standing_s=1.0, settle_s=1.5,
              asymmetry_pct=0.0, noise_std=0.0, seed=0, sway_m=0.0, rate=SAMPLE_RATE):
        movement, _ = movement_profile(test_type, body_weight, rate)
        total = np.concatenate([
            np.full(int(standing_s * rate), body_weight),
            movement,
            np.full(int(settle_s * rate), body_weight),
        ])
        return split_trace(total, rate, np.random.default_rng(seed), noise_std=noise_std,
                           asymmetry_pct=asymmetry_pct, sway_m=sway_m)
    return build


@pytest.fixture
def step_jump():
    """
    Squat jump made of steps: bodyweight for 1s, twice bodyweight for 0.2s,
    0.4s of flight, landing back at bodyweight. Closed form: takeoff
    velocity g*0.2, both jump heights g*0.02 m.
    """
    def build(body_weight=BODY_WEIGHT, rate=SAMPLE_RATE):
        total = np.concatenate([
            np.full(int(1.0 * rate), body_weight),
            np.full(int(0.2 * rate), 2.0 * body_weight),
            np.zeros(int(0.4 * rate)),
            np.full(int(1.5 * rate), body_weight),
        ])
        return [ForceSample(i / rate, f / 2.0, f / 2.0) for i, f in enumerate(total)]
    return build


# ============================================================================
# Pipeline helpers
# ============================================================================

@pytest.fixture
def run_pipeline(settings, zero_calibration):
    """
    Feed samples through a MeasurementPipeline until the detector reaches a
    terminal phase or the samples run out.

    Returns:
        (session, pipeline, transitions)
    """
    def run(samples, test_type, body_weight=BODY_WEIGHT, engine_settings=None, calibration=None):
        session = TestSession(
            athlete_id='athlete-1',
            test_type=test_type,
            body_weight=body_weight,
            calibration=calibration or zero_calibration,
        )
        pipeline = MeasurementPipeline(session, engine_settings or settings)
        transitions = []
        for sample in samples:
            transitions.extend(pipeline.feed(sample))
            if pipeline.detector.is_terminal:
                break
        return session, pipeline, transitions
    return run


@pytest.fixture
def session_trace():
    """Complete raw session trace (unloaded, step on, standing, movement) with a fixed seed"""
    def build(test_type=TestType.COUNTERMOVEMENT_JUMP, seed=7, **kwargs):
        return build_trace(test_type, body_mass_kg=BODY_MASS_KG, seed=seed, **kwargs)
    return build


@pytest.fixture
def simulated_link():
    """Unpaced simulated plate whose channel holds the whole trace"""
    def build(samples, **kwargs):
        kwargs.setdefault('queue_capacity', len(samples) + 1)
        return SimulatedForcePlate(samples, **kwargs)
    return build


@pytest.fixture
def event_queue():
    return queue.Queue()


@pytest.fixture
def coordinator_factory(event_queue):
    """SessionCoordinator whose settings hold the whole trace in the channel"""
    def build(samples, sink=None, **overrides):
        overrides.setdefault('queue_capacity', len(samples) + 1)
        return SessionCoordinator(EngineSettings(**overrides), event_queue=event_queue, sink=sink)
    return build


def drain(events):
    """All events currently in the queue"""
    items = []
    while True:
        try:
            items.append(events.get_nowait())
        except queue.Empty:
            return items


@pytest.fixture
def drain_events():
    return drain
