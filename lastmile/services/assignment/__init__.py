"""Courier assignment and reassignment."""
