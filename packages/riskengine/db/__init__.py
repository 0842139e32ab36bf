"""Async PostgreSQL persistence for analytics results."""
