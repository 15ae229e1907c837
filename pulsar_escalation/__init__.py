"""Pulsar alert escalation and on-call resolution engine."""

__version__ = "0.1.0"
