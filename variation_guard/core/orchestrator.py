"""
Variation request orchestration.

Runs one request to completion on the calling worker:

    rate limit -> validate -> price -> reserve -> dispatch -> settle
    -> materialize -> response

Admission and authorization errors are raised before any credit moves.
Once credits are reserved the request always ends in a settled disposition
and a response, never in a bare error.
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
import sqlite3
from typing import Any, Callable, Dict, Iterable, List, Optional

from .aggregator import OutcomeAggregator
from .dispatcher import DispatchResult, GenerationDispatcher
from .errors import InsufficientCredits, InvalidRequest, RateLimited
from .materializer import MaterializedVariant, ResultMaterializer
from .pricing import DEFAULT_COST_TABLE, CostTable, calculate_required_credits
from .rate_limit import RateLimiter
from .variants import Failure, VariationRequest, build_request, spec_to_dict

logger = logging.getLogger(__name__)

DEFAULT_MAX_SOURCE_IMAGE_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class VariantResult:
    """Caller-facing result of one requested variant."""
    index: int
    kind: str
    status: str
    artifact_ref: Optional[str] = None
    artifact_id: Optional[str] = None
    description: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    combined: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"index": self.index, "kind": self.kind, "status": self.status}
        if self.status == "success":
            payload["artifact_ref"] = self.artifact_ref
            payload["artifact_id"] = self.artifact_id
            payload["combined"] = self.combined
            if self.description:
                payload["description"] = self.description
            if self.artifact_ref is None:
                payload["warning"] = "Artifact generated but could not be stored"
        else:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
        return payload


@dataclass(frozen=True)
class VariationResponse:
    """Result payload of an accepted request."""
    request_id: str
    status: str
    credits_used: int
    credits_remaining: Optional[int]
    variants: List[VariantResult]
    remaining_requests: Optional[int] = None
    failure_reasons: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return any(variant.status == "success" for variant in self.variants)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "request_id": self.request_id,
            "status": self.status,
            "credits_used": self.credits_used,
            "credits_remaining": self.credits_remaining,
            "variants": [variant.to_payload() for variant in self.variants],
        }
        if self.remaining_requests is not None:
            payload["remaining_requests"] = self.remaining_requests
        if not self.succeeded:
            payload["error"] = (
                "Image generation service unavailable. Credits have been refunded."
                if self.status == "service_unavailable"
                else "Failed to generate variations. Credits have been refunded."
            )
            payload["details"] = list(self.failure_reasons)
        return payload


def load_source_image(ref: str) -> bytes:
    """Default source loader: read the referenced file."""
    try:
        return Path(ref).read_bytes()
    except OSError as e:
        raise InvalidRequest(f"Source image {ref!r} could not be read: {e.strerror or e}")


class VariationOrchestrator:
    """Drives one variation request through admission, generation and settlement."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        ledger,
        dispatcher: GenerationDispatcher,
        aggregator: OutcomeAggregator,
        materializer: ResultMaterializer,
        repository,
        cost_table: CostTable = DEFAULT_COST_TABLE,
        source_loader: Callable[[str], bytes] = load_source_image,
        max_source_image_bytes: int = DEFAULT_MAX_SOURCE_IMAGE_BYTES
    ):
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.aggregator = aggregator
        self.materializer = materializer
        self.repository = repository
        self.cost_table = cost_table
        self.source_loader = source_loader
        self.max_source_image_bytes = max_source_image_bytes

    def handle(
        self,
        requester_id: str,
        source_image_ref: str,
        variant_specs: Iterable[Any],
        request_id: Optional[str] = None
    ) -> VariationResponse:
        """Process one variation request end to end.

        Args:
            requester_id: Pre-authenticated requester (also the credit account)
            source_image_ref: Reference to the source portrait
            variant_specs: Requested variants, wire form or VariantSpec objects
            request_id: Optional caller-supplied request id

        Returns:
            VariationResponse for every request that got past reservation

        Raises:
            RateLimited: Admission window exhausted
            InvalidRequest: Empty or malformed request, unreadable or oversized image
            InsufficientCredits: Balance below the required credits
        """
        decision = self.rate_limiter.admit(requester_id)
        if not decision.allowed:
            raise RateLimited(requester_id, decision.retry_after(self.rate_limiter.clock()))

        request = build_request(requester_id, source_image_ref, variant_specs, request_id=request_id)
        source_image = self._load_source(request)
        required = calculate_required_credits(request.variant_specs, self.cost_table)
        if self.repository.get_request(request.request_id) is not None:
            raise InvalidRequest(f"Request {request.request_id} was already submitted")

        logger.info(
            "Accepted %s from %s: %d variants, %d credits",
            request.request_id, requester_id, len(request.variant_specs), required
        )
        try:
            self.repository.record_request(
                request_id=request.request_id,
                account_id=requester_id,
                source_image_ref=request.source_image_ref,
                variant_specs=[spec_to_dict(spec) for spec in request.variant_specs],
                required_credits=required,
                submitted_at=request.submitted_at,
                status="pending"
            )
        except sqlite3.IntegrityError:
            # A concurrent submission with the same id won the insert.
            raise InvalidRequest(f"Request {request.request_id} was already submitted")

        reserved = self.ledger.reserve(
            requester_id,
            required,
            reason=f"Variation generation {request.request_id}",
            request_id=request.request_id
        )
        if not reserved:
            self.repository.finalize_request(request.request_id, "insufficient_credits")
            raise InsufficientCredits(requester_id, required, self.ledger.read(requester_id))

        result = self._dispatch(request, source_image)
        disposition = self.aggregator.settle(
            request,
            result.outcomes,
            required,
            service_unavailable=result.service_unavailable,
            failure_reasons=result.failure_reasons
        )

        materialized: List[MaterializedVariant] = []
        if disposition.succeeded:
            materialized = self.materializer.materialize(request, result)

        try:
            self.repository.finalize_request(request.request_id, disposition.status)
        except sqlite3.Error:
            logger.exception("Failed to finalize audit row for %s", request.request_id)

        logger.info(
            "Finished %s as %s: %d/%d variants, %d credits charged",
            request.request_id, disposition.status, disposition.success_count,
            len(request.variant_specs), disposition.credits_charged
        )

        return VariationResponse(
            request_id=request.request_id,
            status=disposition.status,
            credits_used=disposition.credits_charged,
            credits_remaining=self._remaining_credits(requester_id),
            variants=_variant_results(request, result, materialized),
            remaining_requests=decision.remaining,
            failure_reasons=disposition.failure_reasons
        )

    def _remaining_credits(self, requester_id: str) -> Optional[int]:
        try:
            return self.ledger.read(requester_id)
        except sqlite3.Error:
            logger.exception("Failed to read balance of %s", requester_id)
            return None

    def _load_source(self, request: VariationRequest) -> bytes:
        source_image = self.source_loader(request.source_image_ref)
        if not source_image:
            raise InvalidRequest("Source image is empty")
        if len(source_image) > self.max_source_image_bytes:
            limit_mb = self.max_source_image_bytes / (1024 * 1024)
            raise InvalidRequest(f"Image too large. Please compress image to under {limit_mb:g}MB.")
        return source_image

    def _dispatch(self, request: VariationRequest, source_image: bytes) -> DispatchResult:
        try:
            return self.dispatcher.dispatch(request, source_image)
        except Exception as e:
            # Credits are already reserved; settle as a total failure so they are refunded.
            logger.exception("Dispatch aborted for %s", request.request_id)
            failure = Failure(reason=f"Variation generation failed: {e}")
            return DispatchResult(outcomes=[failure] * len(request.variant_specs), call_outcomes=[failure])


def _variant_results(
    request: VariationRequest,
    result: DispatchResult,
    materialized: List[MaterializedVariant]
) -> List[VariantResult]:
    by_index = {}
    for variant in materialized:
        for index in variant.spec_indices:
            by_index[index] = variant

    results = []
    for index, (spec, outcome) in enumerate(zip(request.variant_specs, result.outcomes)):
        if outcome.ok:
            stored = by_index.get(index)
            results.append(VariantResult(
                index=index,
                kind=spec.kind.value,
                status="success",
                artifact_ref=stored.artifact_ref if stored else None,
                artifact_id=stored.artifact_id if stored else None,
                description=stored.description if stored else None,
                combined=bool(outcome.metadata.get("combined"))
            ))
        else:
            results.append(VariantResult(
                index=index,
                kind=spec.kind.value,
                status="failure",
                error=outcome.reason,
                error_code=outcome.error_code
            ))
    return results
