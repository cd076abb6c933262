"""Job dispatch engine for long-lived external worker processes."""

__version__ = "0.1.0"
