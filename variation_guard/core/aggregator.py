"""
Outcome aggregation and refund policy.

Settles a dispatched request exactly once:

- Zero successes: the full reservation is restored and the request fails.
- Service unavailable before any call: same refund, distinct status.
- At least one success: the full reservation is kept, no partial refund.

The settlement is keyed by request_id. A second settle() for the same
request returns the recorded disposition without touching the ledger, and
the refund itself carries the idempotency key ``refund:<request_id>``.
"""

from dataclasses import dataclass, field
import logging
import sqlite3
from typing import List, Optional, Sequence

from .variants import VariantOutcome, VariationRequest

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class Disposition:
    """Terminal outcome of a request's accounting."""
    request_id: str
    status: str
    credits_reserved: int
    credits_charged: int
    credits_refunded: int
    success_count: int
    failure_reasons: List[str] = field(default_factory=list)
    replayed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.success_count > 0


class OutcomeAggregator:
    """Decides the refund for a dispatched request."""

    def __init__(self, ledger, settlements):
        """
        Args:
            ledger: CreditLedger used for compensation
            settlements: Repository with insert_settlement/get_settlement
        """
        self.ledger = ledger
        self.settlements = settlements

    def settle(
        self,
        request: VariationRequest,
        outcomes: Sequence[VariantOutcome],
        reserved_amount: int,
        service_unavailable: bool = False,
        failure_reasons: Optional[List[str]] = None
    ) -> Disposition:
        """Apply the refund policy to a completed dispatch.

        Args:
            request: The dispatched request
            outcomes: One outcome per variant spec
            reserved_amount: Credits debited at reservation
            service_unavailable: True if no call could be attempted at all
            failure_reasons: One reason per failed generation call; derived
                from ``outcomes`` when omitted

        Returns:
            The request's disposition (replayed=True if it was already settled)
        """
        try:
            existing = self.settlements.get_settlement(request.request_id)
        except sqlite3.Error:
            logger.exception("Failed to look up settlement of %s", request.request_id)
            existing = None
        if existing is not None:
            logger.info("Request %s already settled as %s", request.request_id, existing["status"])
            return _from_record(existing)

        success_count = sum(1 for outcome in outcomes if outcome.ok)
        if failure_reasons is None:
            failure_reasons = [outcome.reason for outcome in outcomes if not outcome.ok]
        else:
            failure_reasons = list(failure_reasons)

        if success_count == 0:
            status = STATUS_SERVICE_UNAVAILABLE if service_unavailable else STATUS_FAILED
            refunded = reserved_amount
            self.ledger.restore(
                request.requester_id,
                reserved_amount,
                reason=f"Refund: {status} for {request.request_id}",
                request_id=request.request_id,
                idempotency_key=f"refund:{request.request_id}"
            )
            logger.warning(
                "No variants generated for %s, refunded %d credits", request.request_id, refunded
            )
        else:
            status = STATUS_COMPLETED if not failure_reasons else STATUS_PARTIAL
            refunded = 0

        try:
            recorded = self.settlements.insert_settlement(
                request_id=request.request_id,
                account_id=request.requester_id,
                status=status,
                credits_reserved=reserved_amount,
                credits_charged=reserved_amount - refunded,
                credits_refunded=refunded,
                success_count=success_count,
                failure_reasons=failure_reasons
            )
        except sqlite3.Error:
            # Ledger is already settled; the refund key still guards a replay.
            logger.exception("Failed to record settlement for %s", request.request_id)
            recorded = True
        if not recorded:
            return _from_record(self.settlements.get_settlement(request.request_id))

        return Disposition(
            request_id=request.request_id,
            status=status,
            credits_reserved=reserved_amount,
            credits_charged=reserved_amount - refunded,
            credits_refunded=refunded,
            success_count=success_count,
            failure_reasons=failure_reasons
        )


def _from_record(record) -> Disposition:
    return Disposition(
        request_id=record["request_id"],
        status=record["status"],
        credits_reserved=record["credits_reserved"],
        credits_charged=record["credits_charged"],
        credits_refunded=record["credits_refunded"],
        success_count=record["success_count"],
        failure_reasons=list(record["failure_reasons"]),
        replayed=True
    )
