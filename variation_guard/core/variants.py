"""
Variation request data model.

Defines the tagged union of requested transformations, the immutable request
that carries them, and the per-variant outcome produced by dispatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union
import uuid

from .errors import InvalidRequest


class VariantKind(Enum):
    """Tag of a requested transformation."""
    BREED_COAT = "breed_coat"
    OUTFIT = "outfit"
    FORMAT = "format"
    MULTI_SUBJECT = "multi_subject"


@dataclass(frozen=True)
class BreedCoat:
    """Swap breed and coat of the subject."""
    breed_id: str
    coat_id: str
    kind = VariantKind.BREED_COAT

    def attribution(self) -> Dict[str, Any]:
        return {"breed_id": self.breed_id, "coat_id": self.coat_id}


@dataclass(frozen=True)
class Outfit:
    """Dress the subject in a different outfit."""
    outfit_id: str
    kind = VariantKind.OUTFIT

    def attribution(self) -> Dict[str, Any]:
        return {"outfit_id": self.outfit_id}


@dataclass(frozen=True)
class Format:
    """Re-render the portrait in another aspect ratio/format."""
    format_id: str
    kind = VariantKind.FORMAT

    def attribution(self) -> Dict[str, Any]:
        return {"format_id": self.format_id}


@dataclass(frozen=True)
class MultiSubject:
    """Compose several subjects into one portrait.

    ``config`` is kept as an ordered tuple of (key, value) pairs so the spec
    stays hashable and immutable.
    """
    config: Tuple[Tuple[str, Any], ...]
    kind = VariantKind.MULTI_SUBJECT

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "MultiSubject":
        return cls(config=tuple(sorted((str(k), _freeze(v)) for k, v in config.items())))

    def config_dict(self) -> Dict[str, Any]:
        return {k: _thaw(v) for k, v in self.config}

    def attribution(self) -> Dict[str, Any]:
        return {"multi_subject_config": self.config_dict()}


VariantSpec = Union[BreedCoat, Outfit, Format, MultiSubject]


@dataclass(frozen=True)
class VariationRequest:
    """One customer submission. Immutable once accepted."""
    request_id: str
    requester_id: str
    source_image_ref: str
    variant_specs: Tuple[VariantSpec, ...]
    submitted_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Success:
    """A variant that produced an artifact."""
    artifact: bytes
    metadata: Dict[str, Any]
    ok = True


@dataclass(frozen=True)
class Failure:
    """A variant that produced nothing."""
    reason: str
    error_code: str = "generation_failed"
    ok = False


VariantOutcome = Union[Success, Failure]


def parse_variant_spec(raw: Any) -> VariantSpec:
    """Build a VariantSpec from its wire form.

    Accepted form is a mapping with a ``type`` tag, e.g.
    ``{"type": "breed_coat", "breed_id": "b1", "coat_id": "c1"}``.

    Raises:
        InvalidRequest: If the tag is unknown or a field is missing
    """
    if isinstance(raw, (BreedCoat, Outfit, Format, MultiSubject)):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidRequest(f"Variant spec must be a mapping, got {type(raw).__name__}")

    tag = raw.get("type")
    try:
        kind = VariantKind(tag)
    except ValueError:
        valid = [k.value for k in VariantKind]
        raise InvalidRequest(f"Unknown variant type {tag!r}; expected one of: {valid}")

    if kind == VariantKind.BREED_COAT:
        return BreedCoat(
            breed_id=_required_id(raw, "breed_id"),
            coat_id=_required_id(raw, "coat_id"),
        )
    if kind == VariantKind.OUTFIT:
        return Outfit(outfit_id=_required_id(raw, "outfit_id"))
    if kind == VariantKind.FORMAT:
        return Format(format_id=_required_id(raw, "format_id"))

    config = raw.get("config", {})
    if not isinstance(config, Mapping):
        raise InvalidRequest("'config' of a multi_subject variant must be a mapping")
    return MultiSubject.from_mapping(config)


def build_request(
    requester_id: str,
    source_image_ref: str,
    variant_specs: Iterable[Any],
    request_id: Optional[str] = None,
    submitted_at: Optional[datetime] = None,
) -> VariationRequest:
    """Validate wire input and build an immutable VariationRequest.

    Raises:
        InvalidRequest: If any field is missing or the spec list is empty
    """
    if not requester_id or not str(requester_id).strip():
        raise InvalidRequest("requester_id is required")
    if not source_image_ref or not str(source_image_ref).strip():
        raise InvalidRequest("source_image_ref is required")
    if variant_specs is None:
        raise InvalidRequest("variant_specs is required")

    specs = tuple(parse_variant_spec(raw) for raw in variant_specs)
    if not specs:
        raise InvalidRequest("At least one variant spec is required")

    return VariationRequest(
        request_id=request_id or f"req_{uuid.uuid4().hex}",
        requester_id=str(requester_id),
        source_image_ref=str(source_image_ref),
        variant_specs=specs,
        submitted_at=submitted_at or datetime.now(),
    )


def spec_to_dict(spec: VariantSpec) -> Dict[str, Any]:
    """Wire form of a VariantSpec (inverse of parse_variant_spec)."""
    data: Dict[str, Any] = {"type": spec.kind.value}
    if isinstance(spec, MultiSubject):
        data["config"] = spec.config_dict()
    else:
        data.update(spec.attribution())
    return data


def _required_id(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None or not str(value).strip():
        raise InvalidRequest(f"Missing required '{key}' in {raw.get('type')} variant")
    return str(value)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, list):
        return ("__list__",) + tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        if value and value[0] == "__list__":
            return [_thaw(v) for v in value[1:]]
        return {k: _thaw(v) for k, v in value}
    return value
