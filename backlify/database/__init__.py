"""
Database package initialization.
Exports the store client and the FastAPI session dependency.
"""
from .postgres_client import Base, Database, DatabaseUnavailable, get_database, get_db

__all__ = [
    'Base',
    'Database',
    'DatabaseUnavailable',
    'get_database',
    'get_db',
]
