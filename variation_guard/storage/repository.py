"""
Repository pattern for data access.

Handles schema creation and persistence of request audit rows, settlements
and catalog records.
"""

from datetime import datetime
import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CatalogRecord, RequestAuditRow


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS credit_account (
        account_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        lifetime_purchased INTEGER NOT NULL DEFAULT 0,
        lifetime_consumed INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_transaction (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL REFERENCES credit_account(account_id),
        kind TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        reason TEXT NOT NULL,
        request_id TEXT,
        idempotency_key TEXT UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS variation_request (
        request_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        source_image_ref TEXT NOT NULL,
        variant_specs TEXT NOT NULL,
        required_credits INTEGER NOT NULL,
        status TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        finalized_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS request_settlement (
        request_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        status TEXT NOT NULL,
        credits_reserved INTEGER NOT NULL,
        credits_charged INTEGER NOT NULL,
        credits_refunded INTEGER NOT NULL,
        success_count INTEGER NOT NULL,
        failure_reasons TEXT NOT NULL,
        settled_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        variant_index INTEGER NOT NULL,
        variant_kind TEXT NOT NULL,
        artifact_id TEXT NOT NULL,
        artifact_ref TEXT NOT NULL,
        attribution TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (request_id, variant_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_window (
        key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        window_reset_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_credit_transaction_account ON credit_transaction(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_variation_request_account ON variation_request(account_id)",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``credit_transaction`` is an append-only ledger: no UPDATE or DELETE is
    ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


class VariationRepository:
    """Repository for request audit rows, settlements and catalog records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Request audit

    def record_request(
        self,
        request_id: str,
        account_id: str,
        source_image_ref: str,
        variant_specs: List[Dict[str, Any]],
        required_credits: int,
        submitted_at: datetime,
        status: str = "accepted"
    ) -> None:
        """Insert the audit row of an accepted request."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO variation_request
                (request_id, account_id, source_image_ref, variant_specs,
                 required_credits, status, submitted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                request_id,
                account_id,
                source_image_ref,
                json.dumps(variant_specs),
                required_credits,
                status,
                submitted_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def finalize_request(self, request_id: str, status: str) -> None:
        """Mark a request closed with its terminal status."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE variation_request SET status = ?, finalized_at = ? WHERE request_id = ?",
                (status, datetime.now().isoformat(), request_id)
            )
            conn.commit()
        finally:
            conn.close()

    def get_request(self, request_id: str) -> Optional[RequestAuditRow]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT request_id, account_id, source_image_ref, variant_specs,
                       required_credits, status, submitted_at, finalized_at
                FROM variation_request WHERE request_id = ?
            """, (request_id,)).fetchone()
            return _audit_row(row) if row else None
        finally:
            conn.close()

    def get_recent_requests(self, account_id: str, limit: int = 20) -> List[RequestAuditRow]:
        """Requests of an account, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT request_id, account_id, source_image_ref, variant_specs,
                       required_credits, status, submitted_at, finalized_at
                FROM variation_request
                WHERE account_id = ?
                ORDER BY submitted_at DESC LIMIT ?
            """, (account_id, limit))
            return [_audit_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Settlements

    def insert_settlement(
        self,
        request_id: str,
        account_id: str,
        status: str,
        credits_reserved: int,
        credits_charged: int,
        credits_refunded: int,
        success_count: int,
        failure_reasons: List[str]
    ) -> bool:
        """Record a request's disposition exactly once.

        Returns:
            True if this call recorded it, False if it already existed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO request_settlement
                (request_id, account_id, status, credits_reserved, credits_charged,
                 credits_refunded, success_count, failure_reasons, settled_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                request_id,
                account_id,
                status,
                credits_reserved,
                credits_charged,
                credits_refunded,
                success_count,
                json.dumps(failure_reasons),
                datetime.now().isoformat()
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_settlement(self, request_id: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT request_id, account_id, status, credits_reserved, credits_charged,
                       credits_refunded, success_count, failure_reasons, settled_at
                FROM request_settlement WHERE request_id = ?
            """, (request_id,)).fetchone()
            if row is None:
                return None
            return {
                "request_id": row[0],
                "account_id": row[1],
                "status": row[2],
                "credits_reserved": row[3],
                "credits_charged": row[4],
                "credits_refunded": row[5],
                "success_count": row[6],
                "failure_reasons": json.loads(row[7]),
                "settled_at": datetime.fromisoformat(row[8]),
            }
        finally:
            conn.close()

    # Catalog

    def insert_catalog_record(self, record: CatalogRecord) -> Optional[int]:
        """Insert one catalog record.

        Idempotent per (request_id, variant_index).

        Returns:
            New row id, or None if the record already existed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO catalog_record
                (request_id, account_id, variant_index, variant_kind, artifact_id,
                 artifact_ref, attribution, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.request_id,
                record.account_id,
                record.variant_index,
                record.variant_kind,
                record.artifact_id,
                record.artifact_ref,
                json.dumps(record.attribution),
                record.description,
                record.created_at.isoformat()
            ))
            conn.commit()
            return cursor.lastrowid if cursor.rowcount == 1 else None
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_catalog_records(self, request_id: str) -> List[CatalogRecord]:
        """Catalog records of a request in variant order."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, request_id, account_id, variant_index, variant_kind,
                       artifact_id, artifact_ref, attribution, description, created_at
                FROM catalog_record
                WHERE request_id = ?
                ORDER BY variant_index
            """, (request_id,))
            return [
                CatalogRecord(
                    record_id=row[0],
                    request_id=row[1],
                    account_id=row[2],
                    variant_index=row[3],
                    variant_kind=row[4],
                    artifact_id=row[5],
                    artifact_ref=row[6],
                    attribution=json.loads(row[7]),
                    description=row[8],
                    created_at=datetime.fromisoformat(row[9])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


def _audit_row(row) -> RequestAuditRow:
    return RequestAuditRow(
        request_id=row[0],
        account_id=row[1],
        source_image_ref=row[2],
        variant_specs=json.loads(row[3]),
        required_credits=row[4],
        status=row[5],
        submitted_at=datetime.fromisoformat(row[6]),
        finalized_at=datetime.fromisoformat(row[7]) if row[7] else None
    )


# Global repository instance
_default_repository: Optional[VariationRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> VariationRepository:
    """Get a repository instance.

    This function provides a singleton instance of the VariationRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of VariationRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = VariationRepository(db_path)
    return _default_repository
