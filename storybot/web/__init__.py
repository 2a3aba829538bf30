"""Persistence models, database operations and the read-only HTTP API."""
