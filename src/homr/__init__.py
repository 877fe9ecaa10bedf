"""HOMR: observe, steer and escalate for fleets of autonomous coding workers."""

__version__ = "0.1.0"
