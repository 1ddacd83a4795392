"""Database package: declarative base, connection handle, and models."""

from orderflow.database.connection import Database

__all__ = ["Database"]
