"""Validation, date and CLI output helpers."""
