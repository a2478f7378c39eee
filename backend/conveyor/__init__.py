"""Conveyor: HTTP-triggered build-and-deploy stage orchestration."""

__version__ = "0.1.0"
__author__ = "Conveyor Team"

__all__ = ["__version__", "__author__"]
