"""
Generation dispatch.

Turns an accepted variation request into an ordered sequence of external
generation calls and collects one outcome per requested variant.

Dispatch rules:
1. The first breed/coat spec and the first outfit spec of a request are
   merged into a single combined call; every other spec gets its own call.
2. Calls run strictly in submission order, one at a time.
3. The pacer runs between consecutive calls, never after the last one.
4. A failing call is recorded as a Failure and dispatch continues.
5. Nothing is retried: the provider is not idempotent.
"""

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import GenerationError, UpstreamUnavailable
from .pacing import NoDelayPacer, Pacer
from .variants import (
    Failure,
    Success,
    VariantKind,
    VariantOutcome,
    VariantSpec,
    VariationRequest,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationCall:
    """One planned call to the generation capability."""
    spec_indices: Tuple[int, ...]
    specs: Tuple[VariantSpec, ...]

    @property
    def kinds(self) -> Tuple[VariantKind, ...]:
        return tuple(spec.kind for spec in self.specs)

    @property
    def combined(self) -> bool:
        return len(self.specs) > 1

    def attribution(self) -> Dict[str, Any]:
        """Which breed/coat/outfit/format/config produced the artifact."""
        merged: Dict[str, Any] = {}
        for spec in self.specs:
            merged.update(spec.attribution())
        return merged

    def metadata(self) -> Dict[str, Any]:
        metadata = self.attribution()
        metadata.update({
            "variant_kinds": [kind.value for kind in self.kinds],
            "spec_indices": list(self.spec_indices),
            "combined": self.combined,
        })
        return metadata


class ImageGenerator:
    """External single-variant generation capability."""

    def ensure_available(self) -> None:
        """Raise UpstreamUnavailable if no call can be made at all."""

    def generate(self, source_image: bytes, call: GenerationCall) -> bytes:
        """Return raw image bytes or raise a GenerationError."""
        raise NotImplementedError


@dataclass
class DispatchResult:
    """Outcomes of a dispatch, one per spec, in spec order."""
    outcomes: List[VariantOutcome]
    calls: List[GenerationCall] = field(default_factory=list)
    call_outcomes: List[VariantOutcome] = field(default_factory=list)
    service_unavailable: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failure_reasons(self) -> List[str]:
        """One reason per failed call, so a merged call is reported once."""
        outcomes = self.call_outcomes or self.outcomes
        return [outcome.reason for outcome in outcomes if not outcome.ok]

    def successful_calls(self) -> List[Tuple[GenerationCall, Success]]:
        """Successful calls in spec order, each exactly once."""
        return [
            (call, outcome)
            for call, outcome in zip(self.calls, self.call_outcomes)
            if outcome.ok
        ]


def plan_calls(variant_specs: Sequence[VariantSpec]) -> List[GenerationCall]:
    """Group specs into generation calls, preserving submission order.

    A merged breed/coat + outfit call sits at the position of whichever of
    the two specs came first.
    """
    first_breed_coat = _first_index(variant_specs, VariantKind.BREED_COAT)
    first_outfit = _first_index(variant_specs, VariantKind.OUTFIT)

    merged: Tuple[int, ...] = ()
    if first_breed_coat is not None and first_outfit is not None:
        merged = (first_breed_coat, first_outfit)

    calls = []
    for index, spec in enumerate(variant_specs):
        if merged and index in merged:
            if index == min(merged):
                calls.append(GenerationCall(
                    spec_indices=tuple(sorted(merged)),
                    specs=tuple(variant_specs[i] for i in sorted(merged))
                ))
            continue
        calls.append(GenerationCall(spec_indices=(index,), specs=(spec,)))
    return calls


class GenerationDispatcher:
    """Sequential, paced, continue-on-error dispatch of generation calls."""

    def __init__(
        self,
        generator: ImageGenerator,
        pacer: Optional[Pacer] = None,
        request_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if request_timeout is not None and request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        self.generator = generator
        self.pacer = pacer or NoDelayPacer()
        self.request_timeout = request_timeout
        self.clock = clock

    def dispatch(self, request: VariationRequest, source_image: bytes) -> DispatchResult:
        """Attempt every variant of an accepted request.

        Credits must already be reserved. Generation errors never propagate;
        each becomes a Failure for the specs its call covered.

        Args:
            request: Accepted variation request
            source_image: Raw bytes of the source portrait

        Returns:
            DispatchResult with one outcome per spec, in spec order
        """
        specs = request.variant_specs
        calls = plan_calls(specs)

        try:
            self.generator.ensure_available()
        except UpstreamUnavailable as e:
            logger.error("Generation service unavailable for %s: %s", request.request_id, e.reason)
            failure = Failure(reason=e.reason, error_code=e.code)
            return DispatchResult(
                outcomes=[failure] * len(specs),
                calls=calls,
                call_outcomes=[failure] * len(calls),
                service_unavailable=True
            )

        deadline = None
        if self.request_timeout is not None:
            deadline = self.clock() + self.request_timeout

        outcomes: List[Optional[VariantOutcome]] = [None] * len(specs)
        call_outcomes: List[VariantOutcome] = []

        for position, call in enumerate(calls):
            if deadline is not None and self.clock() >= deadline:
                outcome: VariantOutcome = Failure(
                    reason="Request timed out before this variant was generated",
                    error_code="timeout"
                )
            else:
                outcome = self._attempt(request, source_image, call)

            call_outcomes.append(outcome)
            for index in call.spec_indices:
                outcomes[index] = outcome

            is_last = position == len(calls) - 1
            if not is_last and (deadline is None or self.clock() < deadline):
                self.pacer.pause()

        return DispatchResult(outcomes=list(outcomes), calls=calls, call_outcomes=call_outcomes)

    def _attempt(self, request: VariationRequest, source_image: bytes, call: GenerationCall) -> VariantOutcome:
        label = "+".join(kind.value for kind in call.kinds)
        try:
            image = self.generator.generate(source_image, call)
        except GenerationError as e:
            logger.warning("Generation failed for %s [%s]: %s", request.request_id, label, e.reason)
            return Failure(reason=e.reason, error_code=e.code)
        except Exception as e:
            logger.exception("Unexpected generation error for %s [%s]", request.request_id, label)
            return Failure(reason=str(e) or type(e).__name__)

        if not image:
            logger.warning("Generation returned no image for %s [%s]", request.request_id, label)
            return Failure(reason="Generation returned no image")

        logger.info("Generated %s for %s (%d bytes)", label, request.request_id, len(image))
        return Success(artifact=image, metadata=call.metadata())


def _first_index(specs: Sequence[VariantSpec], kind: VariantKind) -> Optional[int]:
    for index, spec in enumerate(specs):
        if spec.kind == kind:
            return index
    return None
