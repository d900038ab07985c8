"""Continuum: autonomous continuity pipeline for agent task boards."""

__version__ = "0.1.0"
