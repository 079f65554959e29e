"""
End-to-end tests: simulated plate -> session coordinator -> result.

Covers the workflow order, link failures, stop/cancel, events and result
storage.
"""

import queue
import threading
import time

import pytest

from hardware.simulated_plate import SimulatedForcePlate
from processing.errors import (
    ExcessiveNoiseError, IncompleteTestError, StorageError, WorkflowError,
)
from processing.models import Quality, TestPhase, TestType, WorkflowState

DEVICE = 'sim-0'

# Raw build_trace layout at 1000Hz: 2.5s unloaded, 0.5s step on, 4s standing,
# then the movement
MOVEMENT_START = 7000
MID_PROPULSION = 7650
IN_LANDING = 8350
AFTER_BODYWEIGHT = 6500


def wait_until_queued(handle, total, timeout=5.0):
    """Block until the producer has put all ``total`` samples in the channel."""
    deadline = time.monotonic() + timeout
    while len(handle.channel) + handle.channel.delivered < total:
        if time.monotonic() > deadline:
            raise AssertionError("simulated plate did not deliver the trace in time")
        time.sleep(0.005)


class GatedPlate(SimulatedForcePlate):
    """Delivers the trace up to ``gate_at``, then waits for the gate before sending the rest."""

    def __init__(self, samples, gate_at, **kwargs):
        super().__init__(samples, **kwargs)
        self.gate_at = gate_at
        self.gate = threading.Event()

    def _acquire(self, handle):
        samples = handle.device_state
        yield samples[:self.gate_at]
        self.gate.wait(5.0)
        yield samples[self.gate_at:]
        self.wait_stopped(handle)


def in_background(operation, *args):
    """Run ``operation`` on a thread and keep whatever it raised."""
    outcome = {}

    def target():
        try:
            operation(*args)
        except Exception as e:
            outcome['error'] = e

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, outcome


def prepare(coordinator, link, test_type=TestType.COUNTERMOVEMENT_JUMP):
    session = coordinator.open_session(link, DEVICE, 'athlete-1', test_type)
    coordinator.start_calibration(session)
    coordinator.measure_bodyweight(session)
    coordinator.start_test(session)
    return session


class TestFullSession:
    """Test complete sessions per test type"""

    def test_countermovement_jump(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)

        assert result.is_valid
        assert not result.aborted
        assert result.error is None
        assert result.quality in (Quality.EXCELLENT, Quality.GOOD)
        metrics = result.metrics
        assert metrics['jumpHeightImpulse'] == pytest.approx(metrics['jumpHeightFlightTime'], rel=0.05)
        assert 0.2 < metrics['jumpHeightFlightTime'] < 0.35
        assert metrics['qualityScore'] == result.quality_score
        assert result.duration_ms > 0

    def test_session_state_and_bodyweight(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = prepare(coordinator, simulated_link(samples))
        try:
            assert session.state is WorkflowState.EXECUTING
            assert session.body_weight == pytest.approx(75 * 9.81, rel=0.01)
            assert session.calibration.left_offset == pytest.approx(15.0, abs=0.5)
            assert session.calibration.right_offset == pytest.approx(-10.0, abs=0.5)
            result = coordinator.run_test(session)
            assert session.state is WorkflowState.COMPLETE
            assert session.current_phase is TestPhase.RECOVERY
            assert session.segments[-1].phase is TestPhase.RECOVERY
            assert result.session_id == session.id
        finally:
            coordinator.close(session)

    def test_same_seed_same_metrics(self, session_trace, simulated_link, coordinator_factory):
        results = []
        for _ in range(2):
            samples = session_trace(seed=21)
            coordinator = coordinator_factory(samples)
            results.append(coordinator.run(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP))
        assert results[0].metrics == results[1].metrics

    def test_squat_jump(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace(TestType.SQUAT_JUMP)
        coordinator = coordinator_factory(samples)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.SQUAT_JUMP)
        assert result.is_valid
        assert 'jumpHeightFlightTime' in result.metrics

    def test_isometric_pull(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace(TestType.ISOMETRIC_PULL)
        coordinator = coordinator_factory(samples)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.ISOMETRIC_PULL)
        assert result.is_valid
        assert result.metrics['peakForce'] == pytest.approx(2.5 * 75 * 9.81, rel=0.02)
        assert 'flightTimeMs' not in result.metrics

    def test_balance_hold(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace(TestType.BALANCE_HOLD, balance_hold_s=5.0)
        coordinator = coordinator_factory(samples, balance_hold_duration_s=5.0)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.BALANCE_HOLD)
        assert result.is_valid
        assert result.metrics['copRangeLeft'] > 0
        assert result.metrics['copPathLengthRight'] > 0


    def test_unpaced_replay_with_default_queue(self, session_trace, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        link = SimulatedForcePlate(samples)
        session = prepare(coordinator, link)
        try:
            assert session.handle.channel.capacity < len(samples)
            assert session.calibration.left_offset == pytest.approx(15.0, abs=0.5)
            assert session.calibration.right_offset == pytest.approx(-10.0, abs=0.5)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)
        assert result.is_valid
        assert session.handle.channel.dropped == 0
        assert not any('samples missing' in note for note in result.notes)


class TestWorkflowOrder:
    """Test that operations called out of order are rejected"""

    def test_start_test_before_calibration(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            with pytest.raises(WorkflowError):
                coordinator.start_test(session)
            assert session.current_phase is TestPhase.IDLE
            assert session.state is WorkflowState.CONNECTING
        finally:
            coordinator.close(session)
        assert session.state is WorkflowState.ABORTED

    def test_measure_bodyweight_before_calibration(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            with pytest.raises(WorkflowError):
                coordinator.measure_bodyweight(session)
        finally:
            coordinator.close(session)

    def test_run_test_before_start(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            coordinator.start_calibration(session)
            coordinator.measure_bodyweight(session)
            with pytest.raises(WorkflowError):
                coordinator.run_test(session)
            with pytest.raises(WorkflowError):
                coordinator.stop_test(session)
        finally:
            coordinator.close(session)

    def test_noisy_plate_fails_calibration(self, session_trace, simulated_link, coordinator_factory,
                                           event_queue, drain_events):
        samples = session_trace(noise_std=25.0)
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            with pytest.raises(ExcessiveNoiseError):
                coordinator.start_calibration(session)
            assert session.calibration is None
            assert session.state is WorkflowState.CALIBRATING
            with pytest.raises(WorkflowError):
                coordinator.start_test(session)
        finally:
            coordinator.close(session)
        assert 'calibration_failed' in [e.kind for e in drain_events(event_queue)]

    def test_recalibration_from_bodyweight_stage(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace(unloaded_s=6.0)
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            coordinator.start_calibration(session)
            first = session.calibration
            coordinator.start_calibration(session)
            assert session.state is WorkflowState.MEASURING_WEIGHT
            assert session.calibration is not first
            coordinator.measure_bodyweight(session)
            coordinator.start_test(session)
            assert coordinator.run_test(session).is_valid
        finally:
            coordinator.close(session)


class TestLinkFailures:
    """Test streams that end, drop or go silent mid-test"""

    def test_stream_ends_mid_propulsion(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()[:MID_PROPULSION]
        coordinator = coordinator_factory(samples)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)

        assert not result.is_valid
        assert result.aborted
        assert isinstance(result.error, IncompleteTestError)
        assert TestPhase.PROPULSION in result.missing_phases
        for key in ('peakForce', 'jumpHeightFlightTime', 'jumpHeightImpulse', 'asymmetryIndex'):
            assert key not in result.metrics
        assert 'qualityScore' in result.metrics

    def test_link_drop_aborts(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        link = simulated_link(samples, drop_at_index=MID_PROPULSION)
        session = coordinator.open_session(link, DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        try:
            coordinator.start_calibration(session)
            coordinator.measure_bodyweight(session)
            coordinator.start_test(session)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)
        assert result.aborted
        assert 'link dropped' in result.error.reason
        assert session.state is WorkflowState.ABORTED

    def test_silent_link_times_out(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()[:AFTER_BODYWEIGHT]
        coordinator = coordinator_factory(samples)
        link = simulated_link(samples, hold_open=True, stream_timeout_s=0.2)
        result = coordinator.run(link, DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        assert result.aborted
        assert not result.is_valid
        assert TestPhase.UNWEIGHTING in result.missing_phases

    def test_samples_missing_lower_quality(self, session_trace, simulated_link, coordinator_factory):
        full = session_trace()
        samples = full[:6800] + full[6850:]
        coordinator = coordinator_factory(samples)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        assert result.is_valid
        assert any('samples missing' in note for note in result.notes)

    def test_channel_overflow_counted_once(self, session_trace, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        link = GatedPlate(samples, gate_at=AFTER_BODYWEIGHT, queue_capacity=len(samples) + 1)
        session = prepare(coordinator, link)
        try:
            channel = session.handle.channel
            wait_until_queued(session.handle, AFTER_BODYWEIGHT)
            # Leave room for all but 10 of the remaining samples
            channel.capacity = len(channel) + len(samples) - AFTER_BODYWEIGHT - 10
            link.gate.set()
            deadline = time.monotonic() + 5.0
            while len(channel) + channel.delivered + channel.dropped < len(samples):
                assert time.monotonic() < deadline
                time.sleep(0.005)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)

        validator = session.pipeline.validator
        assert channel.dropped == 10
        assert validator.gap_samples == 10
        assert result.is_valid
        expected = 10 / (validator.accepted + 10)
        assert f"{expected * 100:.2f}% of samples missing." in result.notes


class TestStopAndCancel:
    """Test user interrupts delivered through the stream"""

    def test_stop_during_landing_completes(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()[:IN_LANDING]
        coordinator = coordinator_factory(samples)
        session = prepare(coordinator, simulated_link(samples, hold_open=True))
        try:
            wait_until_queued(session.handle, len(samples))
            coordinator.stop_test(session)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)
        assert result.is_valid
        assert session.state is WorkflowState.COMPLETE
        assert session.current_phase is TestPhase.RECOVERY
        assert session.segments[-1].phase is TestPhase.LANDING

    def test_stop_before_movement_aborts(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()[:AFTER_BODYWEIGHT]
        coordinator = coordinator_factory(samples)
        session = prepare(coordinator, simulated_link(samples, hold_open=True))
        try:
            wait_until_queued(session.handle, len(samples))
            coordinator.stop_test(session)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)
        assert not result.is_valid
        assert session.state is WorkflowState.ABORTED

    def test_cancel_during_test(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()[:AFTER_BODYWEIGHT]
        coordinator = coordinator_factory(samples)
        session = prepare(coordinator, simulated_link(samples, hold_open=True))
        try:
            wait_until_queued(session.handle, len(samples))
            coordinator.cancel(session)
            result = coordinator.run_test(session)
        finally:
            coordinator.close(session)
        assert result.aborted
        assert result.error.reason == 'cancelled'
        assert session.state is WorkflowState.ABORTED

    def test_cancel_outside_test(self, session_trace, simulated_link, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(simulated_link(samples), DEVICE, 'athlete-1',
                                           TestType.COUNTERMOVEMENT_JUMP)
        try:
            coordinator.cancel(session)
            assert session.state is WorkflowState.ABORTED
            with pytest.raises(WorkflowError):
                coordinator.start_calibration(session)
        finally:
            coordinator.close(session)

    def test_cancel_during_calibration(self, session_trace, coordinator_factory):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        session = coordinator.open_session(SimulatedForcePlate(samples, realtime=True), DEVICE,
                                           'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        try:
            thread, outcome = in_background(coordinator.start_calibration, session)
            time.sleep(0.5)
            assert session.state is WorkflowState.CALIBRATING
            coordinator.cancel(session)
            thread.join(timeout=5.0)
            assert not thread.is_alive()
        finally:
            coordinator.close(session)
        assert isinstance(outcome.get('error'), WorkflowError)
        assert session.state is WorkflowState.ABORTED
        assert session.calibration is None

    def test_cancel_during_bodyweight(self, session_trace, simulated_link, coordinator_factory):
        # The plates are loaded but the stream pauses before a stable window
        samples = session_trace()[:2600]
        coordinator = coordinator_factory(samples)
        link = simulated_link(samples, hold_open=True, stream_timeout_s=5.0)
        session = coordinator.open_session(link, DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        try:
            coordinator.start_calibration(session)
            thread, outcome = in_background(coordinator.measure_bodyweight, session)
            time.sleep(0.2)
            coordinator.cancel(session)
            thread.join(timeout=5.0)
            assert not thread.is_alive()
            with pytest.raises(WorkflowError):
                coordinator.start_test(session)
        finally:
            coordinator.close(session)
        assert isinstance(outcome.get('error'), WorkflowError)
        assert session.state is WorkflowState.ABORTED
        assert session.body_weight is None


class TestEventsAndStorage:
    """Test the event queue and result sink"""

    def test_phase_events_in_order(self, session_trace, simulated_link, coordinator_factory,
                                   event_queue, drain_events):
        samples = session_trace()
        coordinator = coordinator_factory(samples)
        coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        events = drain_events(event_queue)

        phases = [e.payload['current'] for e in events if e.kind == 'phase']
        assert phases == [
            'QUIET_STANDING', 'UNWEIGHTING', 'BRAKING', 'PROPULSION', 'FLIGHT', 'LANDING', 'RECOVERY',
        ]
        kinds = [e.kind for e in events]
        assert kinds.index('calibrated') < kinds.index('bodyweight') < kinds.index('result')
        assert 'progress' in kinds
        states = [e.payload['state'] for e in events if e.kind == 'workflow']
        assert states == [
            'CONNECTING', 'CALIBRATING', 'MEASURING_WEIGHT', 'EXECUTING', 'FINALIZING', 'COMPLETE',
        ]

    def test_full_event_queue_does_not_block(self, session_trace, simulated_link):
        from processing.session_coordinator import SessionCoordinator
        from settings import EngineSettings

        samples = session_trace()
        events = queue.Queue(maxsize=1)
        coordinator = SessionCoordinator(EngineSettings(queue_capacity=len(samples) + 1), event_queue=events)
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        assert result.is_valid
        assert events.qsize() == 1

    def test_result_saved_to_sink(self, session_trace, simulated_link, coordinator_factory):
        saved = []

        class Sink:
            def save(self, result):
                saved.append(result)

        samples = session_trace()
        coordinator = coordinator_factory(samples, sink=Sink())
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        assert saved == [result]

    def test_storage_failure_still_returns_result(self, session_trace, simulated_link, coordinator_factory,
                                                  event_queue, drain_events):
        class FailingSink:
            def save(self, result):
                raise StorageError("disk full")

        samples = session_trace()
        coordinator = coordinator_factory(samples, sink=FailingSink())
        result = coordinator.run(simulated_link(samples), DEVICE, 'athlete-1', TestType.COUNTERMOVEMENT_JUMP)
        assert result.is_valid
        assert 'storage_error' in [e.kind for e in drain_events(event_queue)]
