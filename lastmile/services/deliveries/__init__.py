"""Delivery record lifecycle: state machine, repository and service."""
