"""
Audit Logger

DESIGN DECISION: Every ledger operation outcome is logged.
This provides:
1. Traceability of every change the user made
2. A record of every rollback and why it happened
3. Debugging capability when the remote store misbehaves

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from gastos.models.audit import AuditEvent, AuditEventBuilder
from gastos.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage, when one is configured (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("gastos.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_ledger_loaded(
        self,
        identity: str,
        expense_count: int,
        category_count: int,
    ) -> None:
        """Log a successful full load."""
        await self.log(AuditEventBuilder.ledger_loaded(
            identity=identity,
            expense_count=expense_count,
            category_count=category_count,
        ))

    async def log_ledger_load_failed(
        self,
        identity: str,
        collections: list[str],
        error_message: str,
    ) -> None:
        """Log a load where one or more collections could not be fetched."""
        await self.log(AuditEventBuilder.ledger_load_failed(
            identity=identity,
            collections=collections,
            error_message=error_message,
        ))

    async def log_ledger_cleared(self, identity: Optional[str]) -> None:
        await self.log(AuditEventBuilder.ledger_cleared(identity))

    async def log_expense_added(
        self,
        expense_id: str,
        amount: str,
        category: str,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_added(
            expense_id=expense_id,
            amount=amount,
            category=category,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_expense_updated(
        self,
        expense_id: str,
        amount: str,
        category: str,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_updated(
            expense_id=expense_id,
            amount=amount,
            category=category,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_expense_deleted(
        self,
        expense_id: str,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_deleted(
            expense_id=expense_id,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_expenses_cleared(
        self,
        deleted_count: int,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expenses_cleared(
            deleted_count=deleted_count,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_category_added(
        self,
        category_id: str,
        label: str,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.category_added(
            category_id=category_id,
            label=label,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_category_deleted(
        self,
        category_id: str,
        identity: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.category_deleted(
            category_id=category_id,
            identity=identity,
            correlation_id=correlation_id,
        ))

    async def log_validation_rejected(
        self,
        operation: str,
        error_message: str,
        correlation_id: UUID,
        entity_id: Optional[str] = None,
    ) -> None:
        """Log input rejected before any remote call."""
        await self.log(AuditEventBuilder.validation_rejected(
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
            entity_id=entity_id,
        ))

    async def log_constraint_violation(
        self,
        operation: str,
        entity_id: str,
        error_message: str,
        correlation_id: UUID,
        details: Optional[dict] = None,
    ) -> None:
        """Log an operation blocked by the integrity check."""
        await self.log(AuditEventBuilder.constraint_violation(
            operation=operation,
            entity_id=entity_id,
            error_message=error_message,
            correlation_id=correlation_id,
            details=details,
        ))

    async def log_persistence_failed(
        self,
        operation: str,
        entity_type: str,
        entity_id: Optional[str],
        error_message: str,
        rolled_back: bool,
        correlation_id: UUID,
        identity: Optional[str] = None,
    ) -> None:
        """Log a remote failure and whether the cache was rolled back."""
        await self.log(AuditEventBuilder.persistence_failed(
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            error_message=error_message,
            rolled_back=rolled_back,
            correlation_id=correlation_id,
            identity=identity,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., adding an expense).
    Pass it through all subsequent operations.
    """
    return uuid4()
