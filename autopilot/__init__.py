"""autopilot: run a CLI coding agent through task, review and analysis phases."""

__version__ = "0.1.0"
