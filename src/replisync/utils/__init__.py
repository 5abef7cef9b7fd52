"""Shared utilities: logging, errors, configuration and notifications."""
