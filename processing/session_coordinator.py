"""
Session coordinator: owns the test workflow and the single consuming loop.

CONNECTING -> CALIBRATING -> MEASURING_WEIGHT -> EXECUTING -> FINALIZING -> COMPLETE,
with ABORTED reachable from anywhere. Calibration can be redone from the
calibration and bodyweight stages; nothing else moves backwards.

Progress is reported as SessionEvent messages on an optional queue so a
presentation layer can follow along without the engine depending on it.
"""
import logging
import math
import queue
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from settings import EngineSettings
from .calibration_manager import BodyweightMeter, CalibrationEngine
from .errors import (
    CalibrationError, DeviceConnectionError, IncompleteTestError, LinkDroppedError, SignalError,
    StorageError, WorkflowError,
)
from .metrics_engine import MetricsEngine
from .models import ForceSample, SessionEvent, TestPhase, TestResult, TestSession, WorkflowState
from .phase_detector import PhaseDetector
from .sample_channel import StreamControl
from .test_profiles import profile_for

logger = logging.getLogger(__name__)

FINAL_STATES = (WorkflowState.COMPLETE, WorkflowState.ABORTED)


class SampleValidator:
    """
    Rejects samples that cannot be processed (non-finite values, timestamps
    that do not increase) and counts timing gaps.
    """

    def __init__(self, sample_rate, gap_factor):
        self.interval = 1.0 / sample_rate
        self.gap_factor = gap_factor
        self.last_time = None
        self.reset_counters()

    def reset_counters(self):
        self.accepted = 0
        self.rejected = 0
        self.gap_samples = 0
        self.gap_count = 0
        self.first_time = None

    def check(self, sample: ForceSample):
        """
        Raises:
            SignalError: The sample has to be dropped
        """
        values = sample.as_tuple()
        if not all(math.isfinite(v) for v in values):
            raise SignalError("non-finite sample value", details={'timestamp': sample.timestamp})
        if self.last_time is not None and sample.timestamp <= self.last_time:
            raise SignalError(
                "non-monotonic timestamp",
                details={'timestamp': sample.timestamp, 'previous': self.last_time}
            )

        if self.last_time is not None:
            dt = sample.timestamp - self.last_time
            if dt > self.gap_factor * self.interval:
                missing = int(round(dt / self.interval)) - 1
                self.gap_samples += missing
                self.gap_count += 1
                logger.warning(f"Gap detected: {dt * 1000:.1f}ms (~{missing} samples missing)")

        if self.first_time is None:
            self.first_time = sample.timestamp
        self.last_time = sample.timestamp
        self.accepted += 1

    def reject(self, error: SignalError):
        self.rejected += 1
        if self.rejected == 1 or self.rejected % 100 == 0:
            logger.warning(f"Dropping sample: {error} ({self.rejected} dropped so far)")


class MeasurementPipeline:
    """
    Calibrate -> detect -> accumulate for one test execution. Keeps the phase
    detector and metrics engine on the same sample indices.
    """

    def __init__(self, session: TestSession, settings: EngineSettings):
        self.session = session
        self.settings = settings
        self.profile = profile_for(session.test_type)
        self.calibration = session.calibration
        self.detector = PhaseDetector(
            self.profile, session.body_weight, session.calibration.noise_std_dev, settings
        )
        self.metrics = MetricsEngine(self.profile, session.body_weight, session.calibration, settings)
        self.first_time = None
        self.last_time = None

    @property
    def aborted(self):
        return self.detector.phase is TestPhase.ABORTED

    def feed(self, raw: ForceSample):
        """Process one validated raw sample and return the phase transitions it confirmed."""
        sample = raw.corrected(self.calibration)
        if self.first_time is None:
            self.first_time = sample.timestamp
        self.last_time = sample.timestamp
        self.metrics.append(sample)
        return self._record(self.detector.process(sample))

    def stop(self):
        return self._record([self.detector.stop()])

    def abort(self, reason):
        return self._record([self.detector.abort(reason)])

    def finish(self):
        """Close the terminal segment once the loop has ended."""
        segment = self.detector.close_terminal_segment()
        if segment is not None:
            self.session.segments.append(segment)
            self.metrics.close_segment(segment)

    def _record(self, transitions):
        recorded = []
        for transition in transitions:
            if transition is None:
                continue
            if transition.segment is not None:
                self.session.segments.append(transition.segment)
                self.metrics.close_segment(transition.segment)
            self.session.current_phase = transition.current
            recorded.append(transition)
        return recorded

    @property
    def duration_ms(self):
        if self.first_time is None:
            return 0.0
        return (self.last_time - self.first_time) * 1000.0


@dataclass
class SessionRuntime:
    """Per-session resources kept on ``TestSession.pipeline``."""
    link: Any
    handle: Any
    stream: Any
    validator: SampleValidator
    pipeline: Optional[MeasurementPipeline] = None
    dropped_at_start: int = 0


class SessionCoordinator:
    """
    Drives sessions through the workflow.

    Args:
        settings: EngineSettings (defaults when omitted)
        event_queue: Optional queue.Queue receiving SessionEvent messages
        sink: Optional object with ``save(result)`` that persists results
    """

    def __init__(self, settings: Optional[EngineSettings] = None, event_queue=None, sink=None):
        self.settings = settings or EngineSettings()
        self.event_queue = event_queue
        self.sink = sink
        self.calibration_engine = CalibrationEngine(self.settings)

    # ------------------------------------------------------------------
    # Workflow operations
    # ------------------------------------------------------------------

    def open_session(self, link, device_id, athlete_id, test_type) -> TestSession:
        """
        Connect to the device and create a session in CONNECTING.

        Raises:
            ConnectError: The device could not be opened
        """
        session = TestSession(athlete_id=athlete_id, test_type=test_type)
        handle = link.connect(device_id, self.settings.sample_rate_hz)
        session.handle = handle
        session.sample_rate_hz = handle.sample_rate_hz
        session.pipeline = SessionRuntime(
            link=link,
            handle=handle,
            stream=link.sample_stream(handle),
            validator=SampleValidator(handle.sample_rate_hz, self.settings.gap_factor),
        )
        logger.info(f"Session {session.id} opened for athlete {athlete_id} ({test_type.value})")
        self._emit(session, 'workflow', state=session.state.name)
        return session

    def start_calibration(self, session: TestSession) -> TestSession:
        """
        Zero the unloaded plates. Allowed again from the bodyweight stage to
        redo calibration, which also discards the measured bodyweight.

        Raises:
            WorkflowError: Wrong state
            CalibrationError: Too much noise or not enough samples; the session stays in CALIBRATING
        """
        self._require(session, 'start_calibration', WorkflowState.CONNECTING,
                      WorkflowState.CALIBRATING, WorkflowState.MEASURING_WEIGHT)
        self._set_state(session, WorkflowState.CALIBRATING)
        session.calibration = None
        session.body_weight = None

        runtime = session.pipeline
        try:
            profile = self.calibration_engine.calibrate(self._setup_samples(session, runtime))
        except CalibrationError as e:
            self._emit(session, 'calibration_failed', error=str(e))
            raise
        except DeviceConnectionError as e:
            self._fail(session, f"link lost during calibration: {e}")
            raise

        self._check_not_cancelled(session, 'start_calibration')
        session.calibration = profile
        self._emit(session, 'calibrated', left_offset=profile.left_offset,
                   right_offset=profile.right_offset, noise_std_dev=profile.noise_std_dev)
        self._set_state(session, WorkflowState.MEASURING_WEIGHT)
        return session

    def measure_bodyweight(self, session: TestSession) -> TestSession:
        """
        Measure bodyweight on the calibrated stream.

        Raises:
            WorkflowError: Not calibrated yet
            UnstableWeightError: No stable window in time
        """
        self._require(session, 'measure_bodyweight', WorkflowState.MEASURING_WEIGHT)
        if session.calibration is None:
            raise WorkflowError('measure_bodyweight', session.state.name, "session is not calibrated")

        runtime = session.pipeline
        meter = BodyweightMeter(self.settings)
        calibrated = (s.corrected(session.calibration) for s in self._setup_samples(session, runtime))
        try:
            session.body_weight = meter.measure(calibrated)
        except CalibrationError as e:
            self._emit(session, 'bodyweight_failed', error=str(e))
            raise
        except DeviceConnectionError as e:
            self._fail(session, f"link lost during bodyweight measurement: {e}")
            raise

        self._check_not_cancelled(session, 'measure_bodyweight')
        self._emit(session, 'bodyweight', body_weight=session.body_weight, std=meter.weight_std)
        return session

    def start_test(self, session: TestSession) -> TestSession:
        """
        Arm the phase detector and metrics engine.

        Raises:
            WorkflowError: Calibration or bodyweight missing; the phase stays IDLE
        """
        self._require(session, 'start_test', WorkflowState.MEASURING_WEIGHT)
        if session.calibration is None:
            raise WorkflowError('start_test', session.state.name, "session is not calibrated")
        if session.body_weight is None:
            raise WorkflowError('start_test', session.state.name, "bodyweight has not been measured")

        runtime = session.pipeline
        runtime.validator.reset_counters()
        runtime.dropped_at_start = runtime.handle.channel.dropped
        runtime.pipeline = MeasurementPipeline(session, self.settings)
        session.segments.clear()
        session.current_phase = TestPhase.IDLE
        self._set_state(session, WorkflowState.EXECUTING)
        return session

    def run_test(self, session: TestSession) -> TestResult:
        """
        Consume the stream until the test ends, then finalize.

        The loop ends at the terminal phase, on stop (terminal phase forced),
        on cancel, link drop or end of stream (aborted). Link loss is not
        raised: it yields an aborted, invalid result.

        Raises:
            WorkflowError: The test has not been started
        """
        self._require(session, 'run_test', WorkflowState.EXECUTING)
        runtime = session.pipeline
        pipeline = runtime.pipeline
        progress_interval = self.settings.progress_interval_ms / 1000.0
        next_progress = None

        try:
            for item in self._validated(runtime):
                if item is StreamControl.STOP:
                    self._publish(session, pipeline.stop())
                    break
                if item is StreamControl.CANCEL:
                    self._publish(session, pipeline.abort("cancelled"))
                    break

                self._publish(session, pipeline.feed(item))

                if next_progress is None:
                    next_progress = item.timestamp
                if item.timestamp >= next_progress:
                    next_progress = item.timestamp + progress_interval
                    self._emit(session, 'progress', phase=session.current_phase.name,
                               time=item.timestamp, samples=pipeline.detector.sample_count)

                if pipeline.detector.is_terminal:
                    break
            else:
                self._publish(session, pipeline.abort("stream ended"))
        except LinkDroppedError as e:
            logger.error(f"Link dropped during test: {e}")
            self._publish(session, pipeline.abort(f"link dropped: {e.reason}"))

        pipeline.finish()
        return self._finalize(session)

    def stop_test(self, session: TestSession) -> TestSession:
        """Request the test to finish; takes effect in the consuming loop."""
        self._require(session, 'stop_test', WorkflowState.EXECUTING)
        runtime = session.pipeline
        runtime.link.interrupt(runtime.handle, StreamControl.STOP)
        logger.info(f"Stop requested for session {session.id}")
        return session

    def cancel(self, session: TestSession) -> TestSession:
        """
        Abandon the session. A running test aborts in the consuming loop.
        During calibration or bodyweight measurement the session aborts at
        once and a CANCEL marker stops the blocked setup step; otherwise the
        session just moves to ABORTED.
        """
        if session.state in FINAL_STATES:
            return session
        runtime = session.pipeline
        if session.state is WorkflowState.EXECUTING:
            runtime.link.interrupt(runtime.handle, StreamControl.CANCEL)
            logger.info(f"Cancel requested for session {session.id}")
            return session
        if session.state in (WorkflowState.CALIBRATING, WorkflowState.MEASURING_WEIGHT):
            runtime.link.interrupt(runtime.handle, StreamControl.CANCEL)
        self._fail(session, "cancelled")
        return session

    def close(self, session: TestSession):
        """Release the device connection. Safe to call more than once."""
        runtime = session.pipeline
        if runtime is None:
            return
        runtime.link.disconnect(runtime.handle)
        if session.state not in FINAL_STATES:
            self._fail(session, "closed")

    def run(self, link, device_id, athlete_id, test_type) -> TestResult:
        """Full workflow in one call: connect, calibrate, weigh, test, close."""
        session = self.open_session(link, device_id, athlete_id, test_type)
        try:
            self.start_calibration(session)
            self.measure_bodyweight(session)
            self.start_test(session)
            return self.run_test(session)
        finally:
            self.close(session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validated(self, runtime):
        for item in runtime.stream:
            if isinstance(item, StreamControl):
                yield item
                continue
            try:
                runtime.validator.check(item)
            except SignalError as e:
                runtime.validator.reject(e)
                continue
            yield item

    def _check_not_cancelled(self, session, operation):
        """A cancel may land while a setup step was still reading the stream."""
        if session.state is WorkflowState.ABORTED:
            raise WorkflowError(operation, session.state.name, "session was cancelled")

    def _setup_samples(self, session, runtime):
        """Samples for calibration and bodyweight; control markers are handled here."""
        for item in self._validated(runtime):
            if item is StreamControl.CANCEL:
                self._fail(session, "cancelled")
                raise WorkflowError("cancel", session.state.name, "session cancelled during setup")
            if item is StreamControl.STOP:
                logger.info("Stop request ignored outside test execution")
                continue
            yield item

    def _finalize(self, session) -> TestResult:
        self._set_state(session, WorkflowState.FINALIZING)
        runtime = session.pipeline
        pipeline = runtime.pipeline
        validator = runtime.validator

        # Dropped and rejected samples each leave a timestamp gap, so the gaps
        # alone count every lost sample once
        dropped = runtime.handle.channel.dropped - runtime.dropped_at_start
        lost = validator.gap_samples
        expected = validator.accepted + lost
        missing_fraction = lost / expected if expected else 0.0
        if lost or dropped or validator.rejected:
            logger.info(
                f"Session {session.id}: {lost} samples missing over {validator.gap_count} gaps "
                f"({dropped} dropped by the channel, {validator.rejected} rejected)"
            )

        evaluation = pipeline.metrics.finalize(missing_fraction=missing_fraction, aborted=pipeline.aborted)
        error = None
        if not evaluation.is_valid:
            error = IncompleteTestError(evaluation.missing_phases, reason=pipeline.detector.abort_reason or "")

        result = TestResult(
            session_id=session.id,
            test_type=session.test_type,
            metrics=evaluation.metric_set.to_export_map(),
            quality=evaluation.quality,
            quality_score=evaluation.quality_score,
            duration_ms=pipeline.duration_ms,
            created_at=datetime.now(timezone.utc),
            metric_set=evaluation.metric_set,
            is_valid=evaluation.is_valid,
            aborted=pipeline.aborted,
            missing_phases=evaluation.missing_phases,
            notes=evaluation.notes,
            error=error,
        )
        self._set_state(session, WorkflowState.COMPLETE if result.is_valid else WorkflowState.ABORTED)
        self._emit(session, 'result', valid=result.is_valid, quality=result.quality.name,
                   quality_score=result.quality_score)

        if self.sink is not None:
            try:
                self.sink.save(result)
            except StorageError as e:
                logger.error(f"Failed to store result for session {session.id}: {e}")
                self._emit(session, 'storage_error', error=str(e))
        return result

    def _publish(self, session, transitions):
        for transition in transitions:
            logger.info(f"Phase: {transition.previous.name} -> {transition.current.name} "
                        f"at {transition.time:.3f}s")
            self._emit(session, 'phase', previous=transition.previous.name,
                       current=transition.current.name, time=transition.time,
                       reason=transition.reason)

    def _require(self, session, operation, *allowed):
        if session.state not in allowed:
            raise WorkflowError(
                operation, session.state.name,
                f"allowed in {', '.join(s.name for s in allowed)}"
            )

    def _set_state(self, session, state):
        if session.state is state:
            return
        logger.debug(f"Session {session.id}: {session.state.name} -> {state.name}")
        session.state = state
        self._emit(session, 'workflow', state=state.name)

    def _fail(self, session, reason):
        logger.info(f"Session {session.id} aborted: {reason}")
        self._set_state(session, WorkflowState.ABORTED)

    def _emit(self, session, kind, **payload):
        if self.event_queue is None:
            return
        event = SessionEvent(kind=kind, session_id=session.id, timestamp=time.monotonic(), payload=payload)
        try:
            self.event_queue.put_nowait(event)
        except queue.Full:
            logger.debug(f"Event queue full, dropping '{kind}' event")
