"""Shared helpers for logging and request verification."""
