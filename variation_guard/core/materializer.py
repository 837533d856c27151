"""
Result materialization.

Persists each successful generation in spec order: store the bytes,
optionally describe the image, then write one catalog record. Every step
after generation is best-effort. Failures are logged and skipped; they never
fail the request or trigger a refund, because credits pay for generation,
not for persistence.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from .dispatcher import DispatchResult, GenerationCall
from .variants import VariationRequest
from variation_guard.storage.models import CatalogRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaterializedVariant:
    """Persistence result for one successful generation call."""
    spec_indices: tuple
    artifact_id: Optional[str]
    artifact_ref: Optional[str]
    record_id: Optional[int]
    description: Optional[str]

    @property
    def stored(self) -> bool:
        return self.artifact_ref is not None


class ResultMaterializer:
    """Stores artifacts and writes catalog records for successful variants."""

    def __init__(self, artifact_store, catalog, describer=None):
        """
        Args:
            artifact_store: ArtifactStore receiving image bytes
            catalog: Repository with insert_catalog_record
            describer: Optional object with describe(image, metadata) -> str
        """
        self.artifact_store = artifact_store
        self.catalog = catalog
        self.describer = describer

    def materialize(self, request: VariationRequest, result: DispatchResult) -> List[MaterializedVariant]:
        """Persist every successful call of a dispatch, in spec order."""
        materialized = []
        for position, (call, success) in enumerate(result.successful_calls()):
            materialized.append(
                self._materialize_one(request, position, call, success.artifact, success.metadata)
            )
        return materialized

    def _materialize_one(
        self,
        request: VariationRequest,
        position: int,
        call: GenerationCall,
        image: bytes,
        metadata: Dict[str, Any]
    ) -> MaterializedVariant:
        filename = variation_filename(position, call)
        try:
            stored = self.artifact_store.save(image, filename, tags=_tags(request, metadata))
        except Exception:
            logger.exception("Failed to store artifact %s for %s", filename, request.request_id)
            return MaterializedVariant(call.spec_indices, None, None, None, None)

        description = self._describe(request, image, metadata)

        record = CatalogRecord(
            request_id=request.request_id,
            account_id=request.requester_id,
            variant_index=call.spec_indices[0],
            variant_kind="+".join(kind.value for kind in call.kinds),
            artifact_id=stored.artifact_id,
            artifact_ref=stored.ref,
            attribution=metadata,
            created_at=datetime.now(),
            description=description
        )
        record_id = None
        try:
            record_id = self.catalog.insert_catalog_record(record)
        except Exception:
            logger.exception(
                "Failed to write catalog record for %s variant %d", request.request_id, record.variant_index
            )

        return MaterializedVariant(
            spec_indices=call.spec_indices,
            artifact_id=stored.artifact_id,
            artifact_ref=stored.ref,
            record_id=record_id,
            description=description
        )

    def _describe(self, request: VariationRequest, image: bytes, metadata: Dict[str, Any]) -> Optional[str]:
        if self.describer is None:
            return None
        try:
            return self.describer.describe(image, metadata)
        except Exception:
            logger.warning("Description generation failed for %s", request.request_id, exc_info=True)
            return None


def variation_filename(position: int, call: GenerationCall, now: Optional[datetime] = None) -> str:
    """Deterministic artifact filename from timestamp, position and attribution."""
    timestamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    parts = [f"variation-{timestamp}-{position}"]
    attribution = call.attribution()
    for key in ("breed_id", "coat_id", "outfit_id", "format_id"):
        if attribution.get(key):
            parts.append(str(attribution[key]))
    if "multi_subject_config" in attribution:
        parts.append("multi-subject")
    return ("-".join(parts) + ".png").lower().replace(" ", "-")


def _tags(request: VariationRequest, metadata: Dict[str, Any]) -> Dict[str, str]:
    tags = {
        "request_id": request.request_id,
        "account_id": request.requester_id,
        "variant_kinds": ",".join(metadata.get("variant_kinds", [])),
    }
    for key in ("breed_id", "coat_id", "outfit_id", "format_id"):
        if metadata.get(key):
            tags[key] = str(metadata[key])
    return tags
