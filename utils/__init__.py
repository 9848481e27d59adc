"""Utility modules for the FormPilot project."""
