"""
Database package: declarative base, async engine/session management and ORM models.
"""
