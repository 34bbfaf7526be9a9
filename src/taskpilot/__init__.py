"""Unattended task-runner for coding agents."""

__version__ = "0.3.0"
