"""
Exception hierarchy for the force plate engine.

Errors carry a human-readable message plus an optional ``details`` dict that
is rendered by ``__str__`` so log lines keep their context.
"""
from typing import Any, Dict, Optional


class ForcePlateError(Exception):
    """Base exception for all force plate engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{details_str}]"
        return self.message


# ============================================================================
# Device link
# ============================================================================

class DeviceConnectionError(ForcePlateError):
    """Base class for device link failures (unreachable or dropped)."""
    pass


class ConnectError(DeviceConnectionError):
    """Raised when a connection cannot be established."""
    pass


class DeviceNotFoundError(ConnectError):
    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}", details={"device_id": device_id})


class ConnectTimeoutError(ConnectError):
    def __init__(self, device_id: str, timeout_s: float):
        super().__init__(
            f"Timed out connecting to {device_id}",
            details={"device_id": device_id, "timeout_s": timeout_s}
        )


class AlreadyConnectedError(ConnectError):
    def __init__(self, device_id: str):
        super().__init__(f"Device already connected: {device_id}", details={"device_id": device_id})


class LinkDroppedError(DeviceConnectionError):
    """Raised by a sample stream when the link goes away mid-stream."""

    def __init__(self, reason: str, samples_delivered: Optional[int] = None):
        details = {"reason": reason}
        if samples_delivered is not None:
            details["samples_delivered"] = samples_delivered
        super().__init__("Device link dropped", details=details)
        self.reason = reason


class StreamConsumedError(DeviceConnectionError):
    """Raised when a one-shot sample stream is requested twice."""

    def __init__(self, device_id: str):
        super().__init__(
            f"Sample stream for {device_id} was already opened",
            details={"device_id": device_id}
        )


# ============================================================================
# Calibration
# ============================================================================

class CalibrationError(ForcePlateError):
    """Base class for calibration and bodyweight measurement failures."""
    pass


class ExcessiveNoiseError(CalibrationError):
    def __init__(self, noise_std_dev: float, ceiling: float):
        super().__init__(
            f"Calibration noise {noise_std_dev:.2f}N exceeds ceiling {ceiling:.2f}N",
            details={"noise_std_dev": round(noise_std_dev, 3), "ceiling": ceiling}
        )
        self.noise_std_dev = noise_std_dev
        self.ceiling = ceiling


class InsufficientCalibrationError(CalibrationError):
    def __init__(self, required: int, actual: int):
        super().__init__(
            "Not enough samples for calibration",
            details={"required": required, "actual": actual}
        )
        self.required = required
        self.actual = actual


class UnstableWeightError(CalibrationError):
    def __init__(self, reason: str, **details):
        super().__init__(f"Bodyweight measurement failed: {reason}", details=details)


# ============================================================================
# Workflow, signal and result
# ============================================================================

class WorkflowError(ForcePlateError):
    """Raised when a session operation is called out of order."""

    def __init__(self, operation: str, state: Any, reason: str = ""):
        message = f"Cannot {operation} while session is {state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"operation": operation, "state": str(state)})
        self.operation = operation
        self.state = state


class SignalError(ForcePlateError):
    """A single sample was rejected (non-monotonic timestamp or corrupt value)."""
    pass


class IncompleteTestError(ForcePlateError):
    """Attached to a result whose mandatory phases did not all complete."""

    def __init__(self, missing_phases, reason: str = ""):
        names = [getattr(p, 'name', str(p)) for p in missing_phases]
        message = "Test incomplete"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"missing_phases": names})
        self.missing_phases = tuple(missing_phases)
        self.reason = reason


class StorageError(ForcePlateError):
    """Raised by result sinks when a result cannot be stored."""
    pass


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(ForcePlateError):
    """Base class for configuration errors."""
    pass


class ConfigFileNotFoundError(ConfigurationError):
    def __init__(self, config_path: str):
        super().__init__(
            f"Configuration file not found: {config_path}",
            details={"config_path": config_path}
        )
