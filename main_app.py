"""
Headless runner for the Force Plate Engine.
Runs one complete session (calibration, bodyweight, test) against the
simulated plate or an MCC board and prints the result as JSON.
"""
import argparse
import json
import logging
import queue
import sys

from pydantic import ValidationError

import config
from hardware.simulated_plate import DEFAULT_DEVICE_ID, SimulatedForcePlate, build_trace
from processing.errors import ForcePlateError
from processing.models import TestType
from processing.session_coordinator import SessionCoordinator
from settings import load_settings

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a force plate test session")
    parser.add_argument('--test-type', choices=[t.value for t in TestType], default='CMJ',
                        help="Test to run (default: CMJ)")
    parser.add_argument('--device', default=None,
                        help=f"MCC board (e.g. mcc:{config.BOARD_NUM}); the simulated plate is used when omitted")
    parser.add_argument('--athlete', default='athlete-1', help="Athlete identifier")
    parser.add_argument('--body-mass', type=float, default=75.0, help="Simulated body mass (kg)")
    parser.add_argument('--asymmetry', type=float, default=0.0, help="Simulated asymmetry (%%)")
    parser.add_argument('--noise', type=float, default=1.0, help="Simulated noise per channel (N)")
    parser.add_argument('--seed', type=int, default=None, help="Seed for the simulated noise")
    parser.add_argument('--config', default=None, help="YAML settings file")
    parser.add_argument('--realtime', action='store_true', help="Pace the simulated replay")
    parser.add_argument('--log-file', default='force_plate_engine.log', help="Log file")
    parser.add_argument('--verbose', action='store_true', help="Also log to stderr")
    return parser.parse_args(argv)


def setup_logging(log_file, level, verbose=False):
    handlers = [logging.FileHandler(log_file)]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s: %(message)s',
        handlers=handlers,
    )


def build_link(args, settings):
    if args.device:
        from hardware.mcc_plate import MccForcePlate
        return MccForcePlate(queue_capacity=settings.queue_capacity,
                             stream_timeout_s=settings.stream_timeout_s), args.device, settings

    samples = build_trace(
        TestType(args.test_type), body_mass_kg=args.body_mass, sample_rate=settings.sample_rate_hz,
        seed=args.seed, noise_std=args.noise, asymmetry_pct=args.asymmetry,
        unloaded_s=settings.calibration_duration_s, balance_hold_s=settings.balance_hold_duration_s,
    )
    link = SimulatedForcePlate(samples, realtime=args.realtime,
                               queue_capacity=settings.queue_capacity,
                               stream_timeout_s=settings.stream_timeout_s)
    return link, DEFAULT_DEVICE_ID, settings


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = load_settings(args.config)
    except (ForcePlateError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.log_file, logging.DEBUG if args.verbose else settings.log_level, args.verbose)
    logger.info(f"Starting {args.test_type} session at {settings.sample_rate_hz}Hz")

    link, device_id, settings = build_link(args, settings)
    events = queue.Queue(maxsize=config.QUEUE_CAPACITY)
    coordinator = SessionCoordinator(settings, event_queue=events)

    try:
        result = coordinator.run(link, device_id, args.athlete, TestType(args.test_type))
    except ForcePlateError as e:
        logger.error(f"Session failed: {e}")
        print(f"Session failed: {e}", file=sys.stderr)
        return 1

    phases = [e.payload['current'] for e in _drain(events) if e.kind == 'phase']
    output = result.to_dict()
    output['phases'] = phases
    print(json.dumps(output, indent=2))
    return 0 if result.is_valid else 1


def _drain(events):
    while True:
        try:
            yield events.get_nowait()
        except queue.Empty:
            return


if __name__ == '__main__':
    sys.exit(main())
