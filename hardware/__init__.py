"""
Hardware interface modules for the Force Plate Engine.

This package contains the device links:
- device_link.py: Connection handles, producer thread and sample streams
- mcc_plate.py: MCC DAQ board interface using the mcculw library
- simulated_plate.py: Trace replay and synthetic test movements
"""
