"""Numeric helpers for force-time signals: filtering, integration, regression and COP."""
import numpy as np
from scipy import integrate, stats
from scipy.signal import butter, filtfilt
from typing import Optional, Tuple

import config


def lowpass_filter(data: np.ndarray, sample_rate: float,
                   cutoff: float = config.FILTER_CUTOFF,
                   order: int = config.FILTER_ORDER) -> np.ndarray:
    """
    Zero-phase Butterworth low-pass.

    Args:
        data: 1D force array
        sample_rate: Sampling rate in Hz
        cutoff: Cutoff frequency in Hz (clamped just below Nyquist)
        order: Filter order

    Returns:
        Filtered copy of ``data``; the input unchanged when it is too short to filter
    """
    data = np.asarray(data, dtype=float)
    if not cutoff or cutoff <= 0:
        return data.copy()

    nyquist = sample_rate / 2.0
    fc = min(cutoff, nyquist * 0.99)
    b, a = butter(order, fc, btype='low', analog=False, fs=sample_rate)

    # filtfilt pads with 3 * max(len(a), len(b)) samples on each side
    if len(data) <= 3 * max(len(a), len(b)):
        return data.copy()
    return filtfilt(b, a, data)


def trapezoid_step(previous: float, current: float, dt: float) -> float:
    """Area of one trapezoid between two consecutive samples."""
    return 0.5 * (previous + current) * dt


def integrate_trapezoid(values: np.ndarray, times: np.ndarray) -> float:
    """Trapezoidal integral over actual timestamps (gaps are bridged linearly)."""
    if len(values) < 2:
        return 0.0
    return float(integrate.trapezoid(values, times))


def cumulative_integral(values: np.ndarray, times: np.ndarray) -> np.ndarray:
    """Running trapezoidal integral starting at zero."""
    if len(values) == 0:
        return np.zeros(0)
    return integrate.cumulative_trapezoid(values, times, initial=0.0)


def regression_slope(times: np.ndarray, values: np.ndarray) -> Optional[float]:
    """Least-squares slope of values over time, or None with fewer than 3 distinct samples."""
    if len(times) < 3 or np.ptp(times) <= 0:
        return None
    return float(stats.linregress(times, values).slope)


def center_of_pressure(fz: np.ndarray, mx: np.ndarray, my: np.ndarray,
                       min_force: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-plate COP coordinates ``(Mx/Fz, My/Fz)`` in metres.
    Samples with ``|Fz| < min_force`` are left out (COP undefined when unloaded).
    """
    fz = np.asarray(fz, dtype=float)
    loaded = np.abs(fz) >= min_force
    if not np.any(loaded):
        return np.zeros(0), np.zeros(0)
    return np.asarray(mx)[loaded] / fz[loaded], np.asarray(my)[loaded] / fz[loaded]


def cop_range(x: np.ndarray, y: np.ndarray) -> Optional[float]:
    """Resultant excursion sqrt(range_x^2 + range_y^2)."""
    if len(x) == 0:
        return None
    return float(np.hypot(np.ptp(x), np.ptp(y)))


def cop_path_length(x: np.ndarray, y: np.ndarray) -> Optional[float]:
    if len(x) < 2:
        return None
    return float(np.sum(np.hypot(np.diff(x), np.diff(y))))


def asymmetry_index(left_integral: float, right_integral: float) -> Optional[float]:
    """
    100 * |L - R| / (L + R), clamped to [0, 100].
    Returns None when the combined load is not positive.
    """
    total = left_integral + right_integral
    if total <= 0:
        return None
    index = 100.0 * abs(left_integral - right_integral) / total
    return float(min(max(index, 0.0), 100.0))
