"""Reference verification platform: submission lifecycle and real-time fan-out."""

__version__ = "1.0.0"
