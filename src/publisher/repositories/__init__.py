"""Repositories backed by SQLAlchemy sessions."""
