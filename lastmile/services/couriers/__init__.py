"""Courier eligibility and directory."""
