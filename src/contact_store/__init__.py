"""
Contact Store - Storage Access and Data Layer Lifecycle

This module implements database access for leads, contacts and call logs
and the system that brings the data layer up and down.

The Contact Store provides:
- An async database manager with retry and a query interceptor chain
- Table definitions and the migrate step
- The data layer system wiring monitoring, caching and index advice
"""

from .database import DatabaseManager, QueryExecutor, QueryInterceptor, quote_identifier
from .schema import CORE_TABLES, MIGRATIONS, metadata, run_migrations, verify_models
from .system import DataLayerSystem

__all__ = [
    'DatabaseManager',
    'QueryExecutor',
    'QueryInterceptor',
    'quote_identifier',
    'CORE_TABLES',
    'MIGRATIONS',
    'metadata',
    'run_migrations',
    'verify_models',
    'DataLayerSystem',
]
