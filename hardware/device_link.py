"""
Device link: connection management and sample streaming for force plates.

Each connection owns a producer thread that reads from the device and pushes
samples into a bounded SampleChannel; the processing loop consumes them
through ``sample_stream``. Concrete devices implement ``_open``, ``_acquire``
and ``_close``.
"""
import logging
import queue
import threading
import time

import config
from processing.errors import (
    AlreadyConnectedError, DeviceConnectionError, LinkDroppedError, StreamConsumedError,
)
from processing.models import ForceSample
from processing.sample_channel import LinkDropped, SampleChannel, StreamControl

logger = logging.getLogger(__name__)


class ConnectionHandle:
    """An open connection to one device. Returned by ``DeviceLink.connect``."""

    def __init__(self, device_id, sample_rate_hz, channel):
        self.device_id = device_id
        self.sample_rate_hz = sample_rate_hz
        self.channel = channel
        self.connected_at = time.monotonic()
        self.stream_taken = False
        self.device_state = None  # Driver specific (board number, replay cursor, ...)

        self._stop_event = threading.Event()
        self._thread = None

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def __repr__(self):
        return f"ConnectionHandle(device_id={self.device_id!r}, sample_rate_hz={self.sample_rate_hz})"


class DeviceLink:
    """
    Base class for force plate devices.

    Samples and in-band control markers reach the consumer in the order they
    were queued: ``sample_stream`` yields ForceSample objects, and
    StreamControl.STOP / StreamControl.CANCEL when ``interrupt`` was called.
    """

    def __init__(self, queue_capacity=config.QUEUE_CAPACITY, stream_timeout_s=config.STREAM_TIMEOUT_S):
        self.queue_capacity = queue_capacity
        self.stream_timeout_s = stream_timeout_s
        self._handles = {}
        self._lock = threading.Lock()

    def connect(self, device_id, sample_rate_hz=config.SAMPLE_RATE):
        """
        Open the device and start acquiring.

        Args:
            device_id: Device identifier understood by the concrete link
            sample_rate_hz: Requested rate, one of the supported rates

        Returns:
            ConnectionHandle

        Raises:
            ConnectError: Device not found, not answering, or already connected
            ValueError: Unsupported sample rate
        """
        if sample_rate_hz not in config.SUPPORTED_SAMPLE_RATES:
            raise ValueError(
                f"Unsupported sample rate {sample_rate_hz}Hz, expected one of {config.SUPPORTED_SAMPLE_RATES}"
            )
        with self._lock:
            if device_id in self._handles:
                raise AlreadyConnectedError(device_id)
            handle = ConnectionHandle(device_id, sample_rate_hz, SampleChannel(self.queue_capacity))
            self._open(handle)
            self._handles[device_id] = handle

        handle._thread = threading.Thread(
            target=self._run, args=(handle,), name=f"acquisition-{device_id}", daemon=True
        )
        handle._thread.start()
        logger.info(f"Connected to {device_id} at {sample_rate_hz}Hz")
        return handle

    def sample_stream(self, handle):
        """
        Lazy stream of samples for ``handle``. Can only be taken once.

        Raises:
            StreamConsumedError: The stream was already taken
        """
        if handle.stream_taken:
            raise StreamConsumedError(handle.device_id)
        handle.stream_taken = True
        return self._iterate(handle)

    def _iterate(self, handle):
        channel = handle.channel
        while True:
            try:
                item = channel.get(timeout=self.stream_timeout_s)
            except queue.Empty:
                raise LinkDroppedError(
                    f"no data for {self.stream_timeout_s:.1f}s", samples_delivered=channel.delivered
                ) from None
            if isinstance(item, LinkDropped):
                raise LinkDroppedError(item.reason, samples_delivered=channel.delivered)
            if item is StreamControl.END:
                logger.info(f"{handle.device_id}: end of stream after {channel.delivered} samples")
                return
            yield item

    def interrupt(self, handle, control):
        """Queue a STOP or CANCEL marker behind the samples already queued."""
        if control not in (StreamControl.STOP, StreamControl.CANCEL):
            raise ValueError(f"Unsupported control marker: {control}")
        handle.channel.put_control(control)

    def disconnect(self, handle):
        """Stop acquisition and release the device. Safe to call twice."""
        with self._lock:
            if self._handles.get(handle.device_id) is not handle:
                return
            del self._handles[handle.device_id]

        handle._stop_event.set()
        if handle._thread is not None and handle._thread is not threading.current_thread():
            handle._thread.join(timeout=2.0)
            if handle._thread.is_alive():
                logger.warning(f"{handle.device_id}: acquisition thread did not stop in time")
        try:
            self._close(handle)
        finally:
            handle.channel.put_control(StreamControl.END)
            logger.info(f"Disconnected from {handle.device_id}")

    def _run(self, handle):
        """Producer loop, runs on the acquisition thread."""
        channel = handle.channel
        logger.debug(f"Acquisition thread started for {handle.device_id}")
        try:
            for chunk in self._acquire(handle):
                if handle._stop_event.is_set():
                    break
                for sample in chunk:
                    channel.put(sample)
            else:
                if not handle._stop_event.is_set():
                    channel.put_control(StreamControl.END)
        except DeviceConnectionError as e:
            logger.warning(f"{handle.device_id}: link dropped: {e}")
            channel.put_control(LinkDropped(str(e.reason if isinstance(e, LinkDroppedError) else e)))
        except Exception as e:
            logger.exception(f"Unexpected error in acquisition thread for {handle.device_id}")
            channel.put_control(LinkDropped(f"acquisition error: {e}"))
        finally:
            logger.debug(f"Acquisition thread stopping for {handle.device_id}")

    def wait_stopped(self, handle, timeout=None):
        """Block until the device's stop was requested; used by sources that idle at the end."""
        return handle._stop_event.wait(timeout)

    # ------------------------------------------------------------------
    # Device specific
    # ------------------------------------------------------------------

    def _open(self, handle):
        """Open the device. Raise a ConnectError subclass on failure."""
        raise NotImplementedError

    def _acquire(self, handle):
        """Yield iterables of ForceSample until the device is exhausted or stopped."""
        raise NotImplementedError

    def _close(self, handle):
        """Release the device."""


def samples_from_rows(rows, t0=0.0, sample_rate=config.SAMPLE_RATE):
    """Build ForceSample objects from ``[n, 6]`` rows (Lfz, Rfz, Lmx, Lmy, Rmx, Rmy)."""
    dt = 1.0 / sample_rate
    return [
        ForceSample(t0 + i * dt, *map(float, row))
        for i, row in enumerate(rows)
    ]
