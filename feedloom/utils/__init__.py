"""Shared helpers: logging, configuration and runtime settings."""
