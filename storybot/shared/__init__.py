"""Shared configuration, database and utility helpers."""
