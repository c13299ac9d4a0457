"""Services package."""

from gastos.services.storage import (
    AuditStorageInterface,
    Collection,
    ConnectionError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    InMemoryRemoteStore,
    MalformedRowError,
    NotFoundError,
    RemoteStoreInterface,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "Collection",
    "ConnectionError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "InMemoryRemoteStore",
    "MalformedRowError",
    "NotFoundError",
    "RemoteStoreInterface",
    "StorageError",
]
