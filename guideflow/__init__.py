"""guideflow - orchestration engine for guided, kiosk-style workflows."""

__version__ = "0.1.0"
