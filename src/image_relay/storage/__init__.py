"""Persistence: SQLite store, Alembic migrations and local blob storage."""
