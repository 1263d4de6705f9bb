"""Supervisor that builds, serves, probes and tests a Fresh app end to end."""

__version__ = "0.1.0"
