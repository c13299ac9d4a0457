"""
Storage Services Package

Provides the abstract remote store interface and its implementations.
Google Sheets is the production backend; the in-memory store backs the
tests and unconfigured runs.
"""

from gastos.services.storage.interface import (
    AuditStorageInterface,
    Collection,
    ConnectionError,
    DuplicateError,
    MalformedRowError,
    NotFoundError,
    RemoteStoreInterface,
    Row,
    StorageError,
)
from gastos.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
)
from gastos.services.storage.memory import InMemoryRemoteStore

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RemoteStoreInterface",
    "Collection",
    "Row",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "MalformedRowError",
    "NotFoundError",
    "StorageError",
    # Implementations
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "InMemoryRemoteStore",
]
