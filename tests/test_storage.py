"""
Unit tests for the storage layer.

Tests request audit rows, settlements, catalog records and artifact files.
"""

from datetime import datetime
import json
import os
from pathlib import Path

import pytest

from variation_guard.storage.artifacts import LocalArtifactStore
from variation_guard.storage.models import CatalogRecord
from variation_guard.storage.repository import VariationRepository, get_repository


def _record(request_id="req_1", index=0, **overrides):
    fields = dict(
        request_id=request_id,
        account_id="cust_1",
        variant_index=index,
        variant_kind="breed_coat+outfit",
        artifact_id="art_1",
        artifact_ref="/tmp/art_1.png",
        attribution={"breed_id": "b1", "coat_id": "c1", "outfit_id": "o1"},
        created_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    fields.update(overrides)
    return CatalogRecord(**fields)


class TestRequestAudit:
    """Test request audit rows."""

    def test_record_and_finalize(self, db_path):
        repo = VariationRepository(db_path)
        repo.record_request(
            request_id="req_1",
            account_id="cust_1",
            source_image_ref="source.png",
            variant_specs=[{"type": "outfit", "outfit_id": "o1"}],
            required_credits=1,
            submitted_at=datetime(2024, 1, 1, 12, 0, 0),
            status="pending"
        )

        row = repo.get_request("req_1")
        assert row.status == "pending"
        assert row.variant_specs == [{"type": "outfit", "outfit_id": "o1"}]
        assert row.finalized_at is None

        repo.finalize_request("req_1", "completed")
        row = repo.get_request("req_1")
        assert row.status == "completed"
        assert row.finalized_at is not None

    def test_unknown_request(self, db_path):
        assert VariationRepository(db_path).get_request("missing") is None

    def test_recent_requests_newest_first(self, db_path):
        repo = VariationRepository(db_path)
        for day in (1, 3, 2):
            repo.record_request(
                request_id=f"req_{day}",
                account_id="cust_1",
                source_image_ref="source.png",
                variant_specs=[],
                required_credits=1,
                submitted_at=datetime(2024, 1, day)
            )

        recent = repo.get_recent_requests("cust_1", limit=2)
        assert [row.request_id for row in recent] == ["req_3", "req_2"]


class TestSettlements:
    """Test exactly-once settlement rows."""

    def test_settlement_recorded_once(self, db_path):
        repo = VariationRepository(db_path)
        args = dict(
            request_id="req_1",
            account_id="cust_1",
            status="partial",
            credits_reserved=3,
            credits_charged=3,
            credits_refunded=0,
            success_count=2,
            failure_reasons=["timeout"]
        )

        assert repo.insert_settlement(**args) is True
        assert repo.insert_settlement(**dict(args, status="failed")) is False

        settlement = repo.get_settlement("req_1")
        assert settlement["status"] == "partial"
        assert settlement["failure_reasons"] == ["timeout"]

    def test_missing_settlement(self, db_path):
        assert VariationRepository(db_path).get_settlement("req_x") is None


class TestCatalog:
    """Test catalog records."""

    def test_insert_and_read(self, db_path):
        repo = VariationRepository(db_path)
        second = repo.insert_catalog_record(_record(index=2, variant_kind="format"))
        first = repo.insert_catalog_record(_record(index=0, description="A pug in a tuxedo"))

        assert first is not None and second is not None
        records = repo.get_catalog_records("req_1")
        assert [r.variant_index for r in records] == [0, 2]
        assert records[0].description == "A pug in a tuxedo"
        assert records[0].attribution["outfit_id"] == "o1"
        assert records[0].record_id == first

    def test_insert_is_idempotent_per_variant(self, db_path):
        repo = VariationRepository(db_path)
        assert repo.insert_catalog_record(_record()) is not None
        assert repo.insert_catalog_record(_record(artifact_id="art_2")) is None
        assert len(repo.get_catalog_records("req_1")) == 1

    def test_get_repository_follows_db_path(self, db_path, temp_dir):
        repo = get_repository(db_path)
        assert get_repository(db_path) is repo
        other = get_repository(os.path.join(temp_dir, "other.db"))
        assert other is not repo


class TestLocalArtifactStore:
    """Test filesystem artifact storage."""

    def test_save_writes_file_and_tags(self, temp_dir):
        store = LocalArtifactStore(root=temp_dir)
        stored = store.save(b"png-bytes", "Variation-1 Pug/Tux.PNG", tags={"request_id": "req_1"})

        path = Path(stored.ref)
        assert path.parent == Path(temp_dir) / "customer-variations"
        assert path.name.startswith(stored.artifact_id)
        assert "/" not in path.name[len(stored.artifact_id):]
        assert stored.size_bytes == 9
        assert store.load(stored.ref) == b"png-bytes"

        tags = json.loads(Path(stored.ref + ".json").read_text(encoding="utf-8"))
        assert tags == {"request_id": "req_1"}

    def test_empty_artifact_rejected(self, temp_dir):
        with pytest.raises(ValueError, match="empty artifact"):
            LocalArtifactStore(root=temp_dir).save(b"", "variation.png")
