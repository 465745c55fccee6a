# src/feed_relay/db/__init__.py
"""Database configuration and utilities."""

from .session import SessionLocal, get_db, session_scope

__all__ = ["get_db", "SessionLocal", "session_scope"]
