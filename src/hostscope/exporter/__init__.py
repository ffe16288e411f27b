"""Persistence of collected samples."""
