"""Utility modules: logging, errors and configuration."""
