"""Utility modules: structured logging setup and async subprocess helpers."""
