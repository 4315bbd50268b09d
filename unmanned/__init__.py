"""Unmanned vehicle driver: telemetry aggregation and waypoint navigation over MAVLink."""

__version__ = "0.1.0"
