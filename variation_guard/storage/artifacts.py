"""
Artifact storage.

Persists generated image bytes and returns a stable reference. The local
store writes files under a root directory with a JSON sidecar of tags.
"""

from dataclasses import dataclass
import json
from pathlib import Path
import re
from typing import Dict, Optional
import uuid


@dataclass(frozen=True)
class StoredArtifact:
    """Reference to a persisted artifact."""
    artifact_id: str
    ref: str
    size_bytes: int


class ArtifactStore:
    """Storage collaborator: bytes + tags in, stable reference out."""

    def save(self, data: bytes, filename: str, tags: Optional[Dict[str, str]] = None) -> StoredArtifact:
        raise NotImplementedError

    def load(self, ref: str) -> bytes:
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    """Filesystem-backed artifact store."""

    def __init__(self, root: str = "artifacts", folder: str = "customer-variations"):
        self.root = Path(root)
        self.folder = folder

    def save(self, data: bytes, filename: str, tags: Optional[Dict[str, str]] = None) -> StoredArtifact:
        if not data:
            raise ValueError("Refusing to store an empty artifact")

        artifact_id = uuid.uuid4().hex
        directory = self.root / self.folder
        directory.mkdir(parents=True, exist_ok=True)

        path = directory / f"{artifact_id}-{_safe_filename(filename)}"
        path.write_bytes(data)
        if tags:
            path.with_suffix(path.suffix + ".json").write_text(
                json.dumps(tags, sort_keys=True), encoding="utf-8"
            )

        return StoredArtifact(artifact_id=artifact_id, ref=str(path), size_bytes=len(data))

    def load(self, ref: str) -> bytes:
        return Path(ref).read_bytes()


def _safe_filename(filename: str) -> str:
    cleaned = re.sub(r"[^a-z0-9._-]+", "-", filename.lower()).strip("-")
    return cleaned or "variation.png"
