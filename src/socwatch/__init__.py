"""socwatch: real-time security-event correlation engine."""

__version__ = "0.1.0"
