"""Slack CloudOps assistant with supervised, time-bounded conversation workers."""

__version__ = "1.0.0"
