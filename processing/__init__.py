"""
Signal processing modules for the Force Plate Engine.

This package contains the measurement pipeline:
- session_coordinator.py: Workflow state machine and the consuming loop
- calibration_manager.py: Zero-offset calibration and bodyweight state machine
- phase_detector.py: Real-time movement phase detection
- metrics_engine.py: Per-test metrics and quality scoring
- sample_channel.py: Bounded producer/consumer channel
- signal_math.py: Filtering, integration and centre-of-pressure helpers
- test_profiles.py: Phase tables per test type
- models.py, errors.py: Data model and exception hierarchy
"""
