# Configuration constants for the Force Plate Engine

# Acquisition Settings
SAMPLE_RATE = 1000  # Hz, negotiated with the device at connect time
SUPPORTED_SAMPLE_RATES = (500, 1000, 2000)
QUEUE_CAPACITY = 4096  # Samples held between producer and consumer (~4s @1kHz)
STREAM_TIMEOUT_S = 2.0  # No sample for this long means the link is gone
DAQ_READ_CHUNK_SIZE = 50  # Samples per channel per blocking scan (MCC hardware)
BOARD_NUM = 0  # DAQ board number (mcculw)

# Channel scaling (MCC hardware)
# Range: 0-333.333 kg per channel -> 0 - (333.333 * 9.81) N per channel = 3270 N per channel
# Voltage: 0-10 V per channel
N_PER_VOLT = 327.0  # N/V, vertical force channels
NM_PER_VOLT = 50.0  # N·m/V, moment channels

# Calibration (unloaded plate)
CALIBRATION_DURATION_S = 2.5
CALIBRATION_NOISE_CEILING_N = 10.0  # Worst-channel std above this fails calibration

# Bodyweight measurement
PRESENCE_THRESHOLD_N = 200.0  # N - person stepped on plate
WEIGHT_STABILITY_THRESHOLD_KG = 2.0
WEIGHT_STABILITY_DURATION_S = 3.0
WEIGHT_TIMEOUT_S = 15.0
MIN_BODY_WEIGHT_N = 200.0

# Analysis Settings
GRAVITY = 9.81  # m/s^2
FILTER_ORDER = 4
FILTER_CUTOFF = 50  # Hz - Low-pass filter cutoff for peak force (clamped below Nyquist)
FLIGHT_FORCE_THRESHOLD_N = 20.0  # Consistent 20N threshold for flight detection
UNWEIGHTING_SIGMA_K = 5.0  # Movement onset at BW - 5 SD
QUIET_BAND_FLOOR_N = 10.0  # Lower bound on the quiet-standing band
ONSET_DWELL_MS = 30.0
VELOCITY_DWELL_MS = 5.0
FLIGHT_DWELL_MS = 20.0  # 20 samples at 1000Hz
LANDING_DWELL_MS = 10.0  # 10 samples at 1000Hz
RECOVERY_DWELL_MS = 300.0
RECOVERY_BAND_FRACTION = 0.10  # +/-10% of bodyweight
BALANCE_HOLD_DURATION_S = 20.0
DEFAULT_MAX_PHASE_DURATION_MS = 3000.0
MAX_PHASE_DURATION_MS = {
    'QUIET_STANDING': 30000.0,  # Waiting for the athlete to start moving
    'FLIGHT': 1000.0,
    'PROPULSION': 8000.0,  # Isometric pulls hold for several seconds
}

# Metrics
RFD_WINDOW_MS = 100.0
COP_SAMPLE_INTERVAL_MS = 10.0
COP_MIN_FORCE_N = 20.0  # Below this Fz the COP is undefined
MIN_FLIGHT_TIME = 0.05  # Flight times outside this range are noted
MAX_FLIGHT_TIME = 0.8

# Quality
QUALITY_WEIGHTS = {
    'phases': 0.40,
    'height_agreement': 0.25,
    'noise': 0.20,
    'asymmetry': 0.15,
}
HEIGHT_AGREEMENT_TOLERANCE = 0.10  # Relative difference between the two jump heights
ASYMMETRY_WARNING_PCT = 15.0
ASYMMETRY_ERROR_PCT = 30.0
MAX_MISSING_SAMPLE_PCT = 5.0
MISSING_SAMPLE_PENALTY = 20.0  # Points removed at MAX_MISSING_SAMPLE_PCT
QUALITY_THRESHOLDS = (
    ('EXCELLENT', 85.0),
    ('GOOD', 70.0),
    ('FAIR', 50.0),
)

# Session
PROGRESS_INTERVAL_MS = 100.0  # Progress events during execution
GAP_FACTOR = 1.5  # Interval > 1.5x expected counts as a gap
