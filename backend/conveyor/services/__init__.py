"""Outbound notification services."""
