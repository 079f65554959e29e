"""
Measurement Computing DAQ backend for the dual force plate.

Reads six analog channels (left Fz, right Fz, left Mx, left My, right Mx,
right My) with blocking finite scans and scales volts to newtons and
newton-metres. Each scan is stamped from the clock when it returns, so time
lost between scans reaches the processing side as a gap. The ``mcculw``
driver only exists on Windows, so it is imported when a connection is opened.
"""
import logging
import time
from ctypes import c_double

import numpy as np

import config
from processing.errors import DeviceNotFoundError, LinkDroppedError
from .device_link import DeviceLink, samples_from_rows

logger = logging.getLogger(__name__)

NUM_CHANNELS = 6
CHANNEL_SCALE = np.array([
    config.N_PER_VOLT, config.N_PER_VOLT,
    config.NM_PER_VOLT, config.NM_PER_VOLT, config.NM_PER_VOLT, config.NM_PER_VOLT,
])


def parse_board_number(device_id):
    """'mcc:0', 'board0' or '0' -> 0"""
    digits = str(device_id).rsplit(':', 1)[-1].lower().replace('board', '')
    if not digits.isdigit():
        raise DeviceNotFoundError(device_id)
    return int(digits)


def scan_start_time(scan_end, chunk_size, sample_rate, last_timestamp=None):
    """
    Timestamp of the first sample of a blocking scan that finished at ``scan_end``.

    The last sample of the scan was taken when the scan returned, so the first
    one is ``chunk_size - 1`` intervals earlier. A scan that starts within
    half a scan of where the previous one ended is treated as contiguous, so
    USB latency does not read as lost data. Anything later is dead time and
    shows up as a timestamp gap.

    Args:
        scan_end: Seconds since the stream origin when the scan returned
        chunk_size: Samples per channel in the scan
        sample_rate: Scan rate in Hz
        last_timestamp: Timestamp of the previous scan's last sample

    Returns:
        float
    """
    dt = 1.0 / sample_rate
    start = scan_end - (chunk_size - 1) * dt
    if last_timestamp is None:
        return start
    contiguous = last_timestamp + dt
    if start - contiguous < 0.5 * chunk_size * dt:
        return contiguous
    return start


class MccForcePlate(DeviceLink):
    """DeviceLink over an MCC USB DAQ board."""

    def __init__(self, chunk_size=config.DAQ_READ_CHUNK_SIZE, **kwargs):
        super().__init__(**kwargs)
        self.chunk_size = chunk_size

    def _open(self, handle):
        from mcculw import ul
        from mcculw.enums import AnalogInputMode, FunctionType, ULRange
        from mcculw.ul import ULError

        board_num = parse_board_number(handle.device_id)
        try:
            board_name = ul.get_board_name(board_num)
        except ULError as e:
            logger.error(f"DAQ Initialization Error ({board_num}): {e}")
            raise DeviceNotFoundError(handle.device_id) from e

        try:
            ul.a_input_mode(board_num, AnalogInputMode.SINGLE_ENDED)
        except ULError as e:
            # Some boards only support one mode
            logger.warning(f"Could not set input mode: {e}")

        try:
            # Make sure no scan from an earlier session is still running
            ul.stop_background(board_num, FunctionType.AIFUNCTION)
        except ULError:
            logger.debug("No background scan to stop")

        handle.device_state = {'board_num': board_num, 'range': ULRange.BIP10VOLTS}
        logger.info(f"DAQ Device '{board_name}' found (Board {board_num}).")

    def _acquire(self, handle):
        from mcculw import ul
        from mcculw.enums import ScanOptions
        from mcculw.ul import ULError

        board_num = handle.device_state['board_num']
        scan_range = handle.device_state['range']
        rate = handle.sample_rate_hz
        total_points = self.chunk_size * NUM_CHANNELS
        ct_buf = (c_double * total_points)()
        origin = None
        last_timestamp = None

        while True:
            memhandle = ul.scaled_win_buf_alloc(total_points)
            if not memhandle:
                raise LinkDroppedError("failed to allocate DAQ buffer for blocking scan")
            try:
                ul.a_in_scan(board_num, 0, NUM_CHANNELS - 1, total_points, rate,
                             scan_range, memhandle, ScanOptions.SCALEDATA)
                ul.scaled_win_buf_to_array(memhandle, ct_buf, 0, total_points)
            except ULError as e:
                raise LinkDroppedError(f"DAQ blocking scan error: {e}") from e
            finally:
                ul.win_buf_free(memhandle)

            scan_end = time.monotonic()  # Last sample of the scan
            if origin is None:
                origin = scan_end - (self.chunk_size - 1) / rate
            t0 = scan_start_time(scan_end - origin, self.chunk_size, rate, last_timestamp)
            volts = np.ctypeslib.as_array(ct_buf).reshape((self.chunk_size, NUM_CHANNELS))
            chunk = samples_from_rows(volts * CHANNEL_SCALE, t0=t0, sample_rate=rate)
            last_timestamp = chunk[-1].timestamp
            yield chunk

    def _close(self, handle):
        if not handle.device_state:
            return
        from mcculw import ul
        from mcculw.enums import FunctionType
        from mcculw.ul import ULError

        try:
            ul.stop_background(handle.device_state['board_num'], FunctionType.AIFUNCTION)
        except ULError:
            logger.debug("No background scan to stop")
