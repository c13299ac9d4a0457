"""
Audit Models for Gastos

Every ledger mutation, successful or not, is logged for audit purposes.
This provides:
1. Traceability of what the user changed and when
2. Debugging information when a remote call fails and a change is rolled back
3. Ability to reconstruct the history of a session

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every outcome of a ledger operation has its own event type.
    """
    # Ledger lifecycle
    LEDGER_LOADED = "ledger_loaded"
    LEDGER_LOAD_FAILED = "ledger_load_failed"
    LEDGER_CLEARED = "ledger_cleared"

    # Expense mutations
    EXPENSE_ADDED = "expense_added"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    EXPENSES_CLEARED = "expenses_cleared"

    # Category mutations
    CATEGORY_ADDED = "category_added"
    CATEGORY_DELETED = "category_deleted"

    # Rejections and failures
    VALIDATION_REJECTED = "validation_rejected"
    CONSTRAINT_VIOLATION = "constraint_violation"
    PERSISTENCE_FAILED = "persistence_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every ledger operation creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'category', 'ledger')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    identity: Optional[str] = Field(
        default=None,
        description="Identity whose ledger was touched"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., everything one user action caused)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "identity": self.identity,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         identity, correlation_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            self.identity or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_added(expense_id, amount, identity, correlation_id)
        event = AuditEventBuilder.persistence_failed("add_expense", ...)
    """

    @staticmethod
    def ledger_loaded(
        identity: str,
        expense_count: int,
        category_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_LOADED,
            entity_type="ledger",
            identity=identity,
            description=f"Ledger loaded: {expense_count} expenses, {category_count} categories",
            details={
                "expense_count": expense_count,
                "category_count": category_count,
            },
        )

    @staticmethod
    def ledger_load_failed(
        identity: str,
        collections: list[str],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_LOAD_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="ledger",
            identity=identity,
            description=f"Ledger load failed for: {', '.join(collections)}",
            details={"collections": collections},
            error_message=error_message,
        )

    @staticmethod
    def ledger_cleared(identity: Optional[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_CLEARED,
            entity_type="ledger",
            identity=identity,
            description="Ledger cleared for sign-out or identity change",
        )

    @staticmethod
    def expense_added(
        expense_id: str,
        amount: str,
        category: str,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_ADDED,
            entity_type="expense",
            entity_id=expense_id,
            identity=identity,
            correlation_id=correlation_id,
            description=f"Expense added: {amount} in {category}",
            details={
                "amount": amount,
                "category": category,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_updated(
        expense_id: str,
        amount: str,
        category: str,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_UPDATED,
            entity_type="expense",
            entity_id=expense_id,
            identity=identity,
            correlation_id=correlation_id,
            description=f"Expense updated: {amount} in {category}",
            details={
                "amount": amount,
                "category": category,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(
        expense_id: str,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            entity_type="expense",
            entity_id=expense_id,
            identity=identity,
            correlation_id=correlation_id,
            description="Expense deleted",
            is_user_action=True,
        )

    @staticmethod
    def expenses_cleared(
        deleted_count: int,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSES_CLEARED,
            entity_type="ledger",
            identity=identity,
            correlation_id=correlation_id,
            description=f"All expenses cleared ({deleted_count} deleted)",
            details={"deleted_count": deleted_count},
            is_user_action=True,
        )

    @staticmethod
    def category_added(
        category_id: str,
        label: str,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_ADDED,
            entity_type="category",
            entity_id=category_id,
            identity=identity,
            correlation_id=correlation_id,
            description=f"Category added: {label}",
            details={"label": label},
            is_user_action=True,
        )

    @staticmethod
    def category_deleted(
        category_id: str,
        identity: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_DELETED,
            entity_type="category",
            entity_id=category_id,
            identity=identity,
            correlation_id=correlation_id,
            description="Category deleted",
            is_user_action=True,
        )

    @staticmethod
    def validation_rejected(
        operation: str,
        error_message: str,
        correlation_id: UUID,
        entity_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"{operation} rejected: invalid input",
            details={"operation": operation},
            error_message=error_message,
            is_user_action=True,
        )

    @staticmethod
    def constraint_violation(
        operation: str,
        entity_id: str,
        error_message: str,
        correlation_id: UUID,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONSTRAINT_VIOLATION,
            severity=AuditSeverity.WARNING,
            entity_type="category",
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"{operation} blocked by integrity check",
            details={"operation": operation, **(details or {})},
            error_message=error_message,
            is_user_action=True,
        )

    @staticmethod
    def persistence_failed(
        operation: str,
        entity_type: str,
        entity_id: Optional[str],
        error_message: str,
        rolled_back: bool,
        correlation_id: UUID,
        identity: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERSISTENCE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type=entity_type,
            entity_id=entity_id,
            identity=identity,
            correlation_id=correlation_id,
            description=f"{operation} failed in remote store",
            details={
                "operation": operation,
                "rolled_back": rolled_back,
            },
            error_message=error_message,
        )
