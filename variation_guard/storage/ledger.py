"""
Credit ledger.

Atomic balance store over SQLite. Each mutation runs in a single
``BEGIN IMMEDIATE`` transaction, which serializes writers per database; the
debit itself is one conditional UPDATE so check-then-debit is indivisible.
"""

from datetime import datetime
import logging
import sqlite3
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CreditAccount, CreditTransaction

logger = logging.getLogger(__name__)

KIND_GRANT = "grant"
KIND_DEBIT = "debit"
KIND_REFUND = "refund"


class CreditLedger:
    """Reserve, restore and read prepaid credit balances."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def reserve(
        self,
        account_id: str,
        amount: int,
        reason: str,
        request_id: Optional[str] = None
    ) -> bool:
        """Debit ``amount`` if and only if the balance covers it.

        Insufficient funds is a normal outcome, not an error.

        Args:
            account_id: Account to debit
            amount: Credits to debit (> 0)
            reason: Audit reason recorded with the debit
            request_id: Originating request, if any

        Returns:
            True if debited, False if the balance was insufficient or the
            account does not exist (no mutation in that case)
        """
        _check_amount(amount)
        now = datetime.now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE credit_account
                SET balance = balance - ?,
                    lifetime_consumed = lifetime_consumed + ?,
                    updated_at = ?
                WHERE account_id = ? AND balance >= ?
            """, (amount, amount, now, account_id, amount))
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            _insert_transaction(conn, account_id, KIND_DEBIT, amount, reason, request_id, None, now)
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def restore(
        self,
        account_id: str,
        amount: int,
        reason: str,
        request_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> bool:
        """Unconditionally credit ``amount`` back as compensation.

        Args:
            account_id: Account to credit
            amount: Credits to restore (> 0)
            reason: Audit reason recorded with the refund
            request_id: Originating request, if any
            idempotency_key: Key under which the refund is applied at most once

        Returns:
            True if credited, False if the idempotency key was already used
        """
        _check_amount(amount)
        return self._credit(
            account_id, amount, KIND_REFUND, reason, request_id, idempotency_key,
            """
            UPDATE credit_account
            SET balance = balance + ?,
                lifetime_consumed = MAX(lifetime_consumed - ?, 0),
                updated_at = ?
            WHERE account_id = ?
            """
        )

    def grant(
        self,
        account_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None
    ) -> bool:
        """Add purchased or promotional credits, creating the account if needed.

        ``idempotency_key`` is typically the payment identifier, so a replayed
        payment notification grants once.

        Returns:
            True if credited, False if the idempotency key was already used
        """
        _check_amount(amount)
        return self._credit(
            account_id, amount, KIND_GRANT, reason, None, idempotency_key,
            """
            UPDATE credit_account
            SET balance = balance + ?,
                lifetime_purchased = lifetime_purchased + ?,
                updated_at = ?
            WHERE account_id = ?
            """
        )

    def read(self, account_id: str) -> int:
        """Point-in-time balance; 0 for unknown accounts."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT balance FROM credit_account WHERE account_id = ?", (account_id,)
            ).fetchone()
            return row[0] if row else 0
        finally:
            conn.close()

    def get_account(self, account_id: str) -> Optional[CreditAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT account_id, balance, lifetime_purchased, lifetime_consumed, updated_at
                FROM credit_account WHERE account_id = ?
            """, (account_id,)).fetchone()
            if row is None:
                return None
            return CreditAccount(
                account_id=row[0],
                balance=row[1],
                lifetime_purchased=row[2],
                lifetime_consumed=row[3],
                updated_at=datetime.fromisoformat(row[4])
            )
        finally:
            conn.close()

    def transactions(self, account_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Ledger entries of an account, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT account_id, kind, amount, reason, created_at, request_id, idempotency_key
                FROM credit_transaction
                WHERE account_id = ?
                ORDER BY id DESC LIMIT ?
            """, (account_id, limit))
            return [
                CreditTransaction(
                    account_id=row[0],
                    kind=row[1],
                    amount=row[2],
                    reason=row[3],
                    created_at=datetime.fromisoformat(row[4]),
                    request_id=row[5],
                    idempotency_key=row[6]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def _credit(
        self,
        account_id: str,
        amount: int,
        kind: str,
        reason: str,
        request_id: Optional[str],
        idempotency_key: Optional[str],
        update_sql: str
    ) -> bool:
        now = datetime.now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            if idempotency_key is not None:
                seen = conn.execute(
                    "SELECT 1 FROM credit_transaction WHERE idempotency_key = ?",
                    (idempotency_key,)
                ).fetchone()
                if seen:
                    conn.rollback()
                    logger.info("Skipping duplicate %s for %s (key %s)", kind, account_id, idempotency_key)
                    return False

            conn.execute("""
                INSERT OR IGNORE INTO credit_account
                (account_id, balance, lifetime_purchased, lifetime_consumed, updated_at)
                VALUES (?, 0, 0, 0, ?)
            """, (account_id, now))
            conn.execute(update_sql, (amount, amount, now, account_id))
            _insert_transaction(conn, account_id, kind, amount, reason, request_id, idempotency_key, now)
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            conn.rollback()
            if idempotency_key is not None:
                return False
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def _insert_transaction(
    conn: sqlite3.Connection,
    account_id: str,
    kind: str,
    amount: int,
    reason: str,
    request_id: Optional[str],
    idempotency_key: Optional[str],
    created_at: str
) -> None:
    conn.execute("""
        INSERT INTO credit_transaction
        (account_id, kind, amount, reason, request_id, idempotency_key, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (account_id, kind, amount, reason, request_id, idempotency_key, created_at))


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer")
