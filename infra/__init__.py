"""Shared infrastructure: configuration loading, structured logging, database backends."""
