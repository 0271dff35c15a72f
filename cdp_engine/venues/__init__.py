"""Venue clients."""
from .memory import InMemoryVenue

__all__ = ["InMemoryVenue"]
