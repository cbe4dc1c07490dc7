"""Geo service: mapping provider adapters and routing heuristics."""
