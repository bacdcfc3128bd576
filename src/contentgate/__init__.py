"""Content quality gate and auto-remediation pipeline."""

__version__ = "0.1.0"
