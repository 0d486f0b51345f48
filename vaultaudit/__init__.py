"""Privileged-account coverage audit: vault vs platform discrepancy history."""

__version__ = "1.0.0"
