"""Simulive: play a recorded broadcast as if it were live, in sync with server time."""

__version__ = "0.1.0"
