"""HTTP API for triggering, inspecting, approving and cancelling runs."""

from .server import create_app

__all__ = ["create_app"]
