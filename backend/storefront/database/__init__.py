"""
Database package.

- store: table-oriented persistence API and its SQLAlchemy implementation
- connection: process-wide async engine and table store
- models: declarative schema used by migrations
"""

__all__ = []
