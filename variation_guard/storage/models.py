"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CreditAccount:
    """Prepaid credit balance owned by one requester."""
    account_id: str
    balance: int
    lifetime_purchased: int
    lifetime_consumed: int
    updated_at: datetime


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable audit row for one ledger mutation.

    Every debit, refund and grant is recorded with its reason; rows are
    append-only.
    """
    account_id: str
    kind: str
    amount: int
    reason: str
    created_at: datetime
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class RequestAuditRow:
    """Audit trail of one variation request."""
    request_id: str
    account_id: str
    source_image_ref: str
    variant_specs: list
    required_credits: int
    status: str
    submitted_at: datetime
    finalized_at: Optional[datetime] = None


@dataclass(frozen=True)
class CatalogRecord:
    """One persisted variant, linked to its artifact and request."""
    request_id: str
    account_id: str
    variant_index: int
    variant_kind: str
    artifact_id: str
    artifact_ref: str
    attribution: Dict[str, Any]
    created_at: datetime
    description: Optional[str] = None
    record_id: Optional[int] = None
