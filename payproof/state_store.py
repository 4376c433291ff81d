import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .errors import ApprovalConflictError, ProofNotFoundError
from .fraud_rules import merge_reasons
from .models import (
    ACTION_APPROVED,
    ACTION_SUBMITTED,
    APPROVED,
    FLAGGED,
    PENDING,
    REQUIRES_REVIEW,
    SYSTEM_ACTOR,
    BulkVerificationJob,
    ExtractionResult,
    PaymentMethod,
    PaymentProof,
    Submission,
    VerificationLogEntry,
)

logger = logging.getLogger(__name__)

NON_TERMINAL = (PENDING, FLAGGED, REQUIRES_REVIEW)

# Row predicates a sweep may claim by. Keys are the only values accepted by claim_batch.
CLAIM_PREDICATES = {
    "auto_verify": "extraction_json IS NOT NULL",
    "flag": "ai_confidence_score IS NOT NULL",
    "retry": "extraction_json IS NULL AND processing_attempts <= :max_attempts",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS submissions (
      id TEXT PRIMARY KEY,
      order_id TEXT NOT NULL,
      seller_id TEXT NOT NULL,
      total_amount REAL NOT NULL,
      currency TEXT,
      payment_reference TEXT,
      status TEXT NOT NULL DEFAULT 'pending',
      payment_method TEXT,
      created_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_submissions_seller_status ON submissions(seller_id, status);",
    """
    CREATE TABLE IF NOT EXISTS payment_methods (
      id TEXT PRIMARY KEY,
      seller_id TEXT NOT NULL,
      method_type TEXT NOT NULL,
      display_name TEXT,
      auto_verify_threshold REAL,
      requires_proof INTEGER NOT NULL DEFAULT 1,
      is_active INTEGER NOT NULL DEFAULT 1
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_proofs (
      id TEXT PRIMARY KEY,
      submission_id TEXT,
      seller_id TEXT NOT NULL,
      payment_method_id TEXT,
      file_url TEXT NOT NULL,
      uploaded_by_name TEXT,
      uploaded_by_phone TEXT,
      ai_confidence_score REAL,
      extracted_amount REAL,
      extracted_reference TEXT,
      extracted_method TEXT,
      extraction_json TEXT,
      processing_attempts INTEGER NOT NULL DEFAULT 0,
      last_processed_at TEXT,
      verification_status TEXT NOT NULL DEFAULT 'pending',
      verified_by TEXT,
      verified_at TEXT,
      rejection_reason TEXT,
      flagged_reasons_json TEXT NOT NULL DEFAULT '[]',
      manual_review_notes TEXT,
      suggested_submission_id TEXT,
      claimed_by TEXT,
      claimed_at TEXT,
      created_at TEXT,
      updated_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_payment_proofs_status ON payment_proofs(verification_status, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_payment_proofs_reference ON payment_proofs(extracted_reference);",
    # one approved proof per submission
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_payment_proofs_one_approved
      ON payment_proofs(submission_id) WHERE verification_status = 'approved';
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_logs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      payment_proof_id TEXT NOT NULL,
      submission_id TEXT,
      order_id TEXT,
      actor TEXT NOT NULL,
      action TEXT NOT NULL,
      previous_status TEXT,
      new_status TEXT,
      notes TEXT,
      metadata_json TEXT NOT NULL DEFAULT '{}',
      created_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_verification_logs_proof ON verification_logs(payment_proof_id);",
    """
    CREATE TRIGGER IF NOT EXISTS verification_logs_no_update
      BEFORE UPDATE ON verification_logs
      BEGIN SELECT RAISE(ABORT, 'verification_logs is append-only'); END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS verification_logs_no_delete
      BEFORE DELETE ON verification_logs
      BEGIN SELECT RAISE(ABORT, 'verification_logs is append-only'); END;
    """,
    """
    CREATE TABLE IF NOT EXISTS bulk_verification_jobs (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      action TEXT NOT NULL,
      total_proofs INTEGER NOT NULL,
      processed_proofs INTEGER NOT NULL DEFAULT 0,
      successful_proofs INTEGER NOT NULL DEFAULT 0,
      failed_proofs INTEGER NOT NULL DEFAULT 0,
      status TEXT NOT NULL DEFAULT 'pending',
      error_message TEXT,
      proof_ids_json TEXT NOT NULL,
      started_at TEXT,
      completed_at TEXT,
      created_at TEXT NOT NULL
    );
    """,
]


def _get_db_path() -> str:
    """Read the DB path from the environment on every call so tests can monkeypatch it."""
    return os.getenv("PAYPROOF_STATE_DB", "payproof_state.db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


class ProofStore:
    """sqlite-backed store for proofs, the submissions they pay, and the verification ledger."""

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = 30.0):
        self._db_path = db_path
        self.busy_timeout = busy_timeout

    @property
    def db_path(self) -> str:
        return self._db_path or _get_db_path()

    @contextmanager
    def _conn(self, write: bool = False):
        # Writers take the RESERVED lock up front so read-then-write sequences are serialized.
        con = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        con.row_factory = sqlite3.Row
        try:
            con.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield con
                con.execute("COMMIT")
            except BaseException:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

    def init_db(self):
        con = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            for stmt in SCHEMA:
                con.execute(stmt)
            con.commit()
        finally:
            con.close()

    # ------------------------------------------------------------------
    # submissions / payment methods (owned by the wider platform)
    # ------------------------------------------------------------------
    def upsert_submission(self, sub: Submission):
        with self._conn(write=True) as con:
            con.execute(
                "INSERT OR REPLACE INTO submissions(id, order_id, seller_id, total_amount, currency, "
                "payment_reference, status, payment_method, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
                (sub.id, sub.order_id, sub.seller_id, sub.total_amount, sub.currency,
                 sub.payment_reference, sub.status, sub.payment_method, sub.created_at or _now()),
            )

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM submissions WHERE id=?", (submission_id,)).fetchone()
        return _row_to_submission(row) if row else None

    def list_pending_submissions(self, seller_id: str) -> List[Submission]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM submissions WHERE seller_id=? AND status='pending' ORDER BY created_at, id",
                (seller_id,),
            ).fetchall()
        return [_row_to_submission(r) for r in rows]

    def upsert_payment_method(self, pm: PaymentMethod):
        with self._conn(write=True) as con:
            con.execute(
                "INSERT OR REPLACE INTO payment_methods(id, seller_id, method_type, display_name, "
                "auto_verify_threshold, requires_proof, is_active) VALUES (?,?,?,?,?,?,?)",
                (pm.id, pm.seller_id, pm.method_type, pm.display_name, pm.auto_verify_threshold,
                 int(pm.requires_proof), int(pm.is_active)),
            )

    def get_payment_method(self, method_id: Optional[str]) -> Optional[PaymentMethod]:
        if not method_id:
            return None
        with self._conn() as con:
            row = con.execute("SELECT * FROM payment_methods WHERE id=?", (method_id,)).fetchone()
        if not row:
            return None
        return PaymentMethod(
            id=row["id"],
            seller_id=row["seller_id"],
            method_type=row["method_type"],
            display_name=row["display_name"] or "",
            auto_verify_threshold=row["auto_verify_threshold"],
            requires_proof=bool(row["requires_proof"]),
            is_active=bool(row["is_active"]),
        )

    # ------------------------------------------------------------------
    # proofs
    # ------------------------------------------------------------------
    def create_proof(self, proof: PaymentProof, actor: str = SYSTEM_ACTOR) -> PaymentProof:
        now = _now()
        proof.created_at = proof.created_at or now
        proof.updated_at = now
        proof.verification_status = PENDING
        with self._conn(write=True) as con:
            con.execute(
                "INSERT INTO payment_proofs(id, submission_id, seller_id, payment_method_id, file_url, "
                "uploaded_by_name, uploaded_by_phone, verification_status, flagged_reasons_json, "
                "processing_attempts, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (proof.id, proof.submission_id, proof.seller_id, proof.payment_method_id, proof.file_url,
                 proof.uploaded_by_name, proof.uploaded_by_phone, PENDING, "[]", 0,
                 proof.created_at, proof.updated_at),
            )
            self._write_log(con, proof.id, proof.submission_id, actor, ACTION_SUBMITTED,
                            None, PENDING, "Payment proof uploaded", {"fileUrl": proof.file_url})
        return proof

    def get_proof(self, proof_id: str) -> PaymentProof:
        with self._conn() as con:
            row = con.execute("SELECT * FROM payment_proofs WHERE id=?", (proof_id,)).fetchone()
        if not row:
            raise ProofNotFoundError(proof_id)
        return _row_to_proof(row)

    def list_proofs(self, status: Optional[str] = None) -> List[PaymentProof]:
        with self._conn() as con:
            if status:
                rows = con.execute(
                    "SELECT * FROM payment_proofs WHERE verification_status=? ORDER BY created_at, id", (status,)
                ).fetchall()
            else:
                rows = con.execute("SELECT * FROM payment_proofs ORDER BY created_at, id").fetchall()
        return [_row_to_proof(r) for r in rows]

    def approved_proof_for_submission(self, submission_id: str) -> Optional[str]:
        with self._conn() as con:
            row = con.execute(
                "SELECT id FROM payment_proofs WHERE submission_id=? AND verification_status='approved'",
                (submission_id,),
            ).fetchone()
        return row["id"] if row else None

    def reference_approved_elsewhere(self, reference: Optional[str], exclude_proof_id: str) -> bool:
        if not reference:
            return False
        with self._conn() as con:
            row = con.execute(
                "SELECT 1 FROM payment_proofs WHERE UPPER(extracted_reference)=UPPER(?) AND id != ? "
                "AND verification_status='approved' LIMIT 1",
                (reference, exclude_proof_id),
            ).fetchone()
        return row is not None

    def save_extraction(self, proof_id: str, extraction: ExtractionResult) -> bool:
        """Store extraction output on a non-terminal proof. Returns False if the proof is terminal."""
        primary = extraction.primary()
        with self._conn(write=True) as con:
            cur = con.execute(
                "UPDATE payment_proofs SET ai_confidence_score=?, extracted_amount=?, extracted_reference=?, "
                "extracted_method=?, extraction_json=?, last_processed_at=?, updated_at=? "
                f"WHERE id=? AND verification_status IN ({_placeholders(NON_TERMINAL)})",
                (extraction.overall_confidence,
                 primary.amount if primary else None,
                 primary.reference if primary else None,
                 primary.method if primary else None,
                 _dumps(extraction.to_dict()), _now(), _now(), proof_id, *NON_TERMINAL),
            )
            return cur.rowcount == 1

    def increment_attempts(self, proof_id: str) -> int:
        with self._conn(write=True) as con:
            con.execute(
                "UPDATE payment_proofs SET processing_attempts = processing_attempts + 1, "
                "last_processed_at=?, updated_at=? WHERE id=?",
                (_now(), _now(), proof_id),
            )
            row = con.execute("SELECT processing_attempts FROM payment_proofs WHERE id=?", (proof_id,)).fetchone()
        if not row:
            raise ProofNotFoundError(proof_id)
        return row["processing_attempts"]

    def transition(
        self,
        proof_id: str,
        *,
        new_status: str,
        action: str,
        actor: str = SYSTEM_ACTOR,
        notes: Optional[str] = None,
        metadata: Optional[dict] = None,
        allowed_from: Iterable[str] = NON_TERMINAL,
        add_flags: Optional[List[str]] = None,
        updates: Optional[Dict[str, object]] = None,
    ) -> Optional[str]:
        """Move a proof to ``new_status`` and append the ledger row in one transaction.

        Returns the previous status, or None when the proof is no longer in ``allowed_from``
        (someone else resolved it first). Flag reasons are only ever added.
        Approval must go through approve_if_unclaimed.
        """
        if new_status == APPROVED:
            raise ValueError("use approve_if_unclaimed for approvals")
        allowed = tuple(allowed_from)
        updates = dict(updates or {})
        bad = set(updates) - UPDATABLE_COLUMNS
        if bad:
            raise ValueError(f"columns not updatable: {sorted(bad)}")

        with self._conn(write=True) as con:
            row = con.execute("SELECT * FROM payment_proofs WHERE id=?", (proof_id,)).fetchone()
            if not row:
                raise ProofNotFoundError(proof_id)
            previous = row["verification_status"]
            if previous not in allowed:
                return None
            reasons = merge_reasons(json.loads(row["flagged_reasons_json"] or "[]"), add_flags or [])
            updates.update({
                "verification_status": new_status,
                "flagged_reasons_json": _dumps(reasons),
                "updated_at": _now(),
            })
            cols = ", ".join(f"{k}=?" for k in updates)
            con.execute(f"UPDATE payment_proofs SET {cols} WHERE id=?", (*updates.values(), proof_id))
            meta = dict(metadata or {})
            if add_flags:
                meta.setdefault("flagReasons", reasons)
            self._write_log(con, proof_id, updates.get("submission_id", row["submission_id"]), actor,
                            action, previous, new_status, notes, meta)
        logger.info("proof %s: %s -> %s (%s by %s)", proof_id, previous, new_status, action, actor)
        return previous

    def annotate(self, proof_id: str, actor: str, notes: str, action: str, metadata: Optional[dict] = None):
        """Ledger-only entry; the proof row is not touched."""
        with self._conn(write=True) as con:
            row = con.execute(
                "SELECT submission_id, verification_status FROM payment_proofs WHERE id=?", (proof_id,)
            ).fetchone()
            if not row:
                raise ProofNotFoundError(proof_id)
            status = row["verification_status"]
            self._write_log(con, proof_id, row["submission_id"], actor, action, status, status, notes, metadata or {})

    def approve_if_unclaimed(
        self,
        proof_id: str,
        submission_id: str,
        *,
        actor: str = SYSTEM_ACTOR,
        action: str = ACTION_APPROVED,
        notes: Optional[str] = None,
        metadata: Optional[dict] = None,
        allowed_from: Iterable[str] = NON_TERMINAL,
        review_notes: Optional[str] = None,
    ) -> Optional[str]:
        """Approve ``proof_id`` for ``submission_id`` only if no other proof of that submission is approved.

        The proof update, the submission's paid transition and the ledger row commit together.
        Returns the previous status, None if the proof left ``allowed_from``, and raises
        ApprovalConflictError if another proof already holds the approval.
        """
        allowed = tuple(allowed_from)
        now = _now()
        with self._conn(write=True) as con:
            row = con.execute(
                "SELECT verification_status FROM payment_proofs WHERE id=?", (proof_id,)
            ).fetchone()
            if not row:
                raise ProofNotFoundError(proof_id)
            previous_status = row["verification_status"]
            if previous_status not in allowed:
                return None

            try:
                cur = con.execute(
                    "UPDATE payment_proofs SET verification_status='approved', submission_id=?, verified_by=?, "
                    "verified_at=?, updated_at=?, manual_review_notes=COALESCE(?, manual_review_notes) "
                    "WHERE id=? AND NOT EXISTS (SELECT 1 FROM payment_proofs p2 WHERE p2.submission_id=? "
                    "AND p2.verification_status='approved' AND p2.id != ?)",
                    (submission_id, actor, now, now, review_notes, proof_id, submission_id, proof_id),
                )
            except sqlite3.IntegrityError as e:
                raise ApprovalConflictError(submission_id) from e

            if cur.rowcount == 0:
                winner = con.execute(
                    "SELECT id FROM payment_proofs WHERE submission_id=? AND verification_status='approved'",
                    (submission_id,),
                ).fetchone()
                raise ApprovalConflictError(submission_id, winner["id"] if winner else None)

            con.execute("UPDATE submissions SET status='paid' WHERE id=?", (submission_id,))
            self._write_log(con, proof_id, submission_id, actor, action, previous_status, APPROVED,
                            notes, metadata or {})
        logger.info("proof %s approved for submission %s by %s", proof_id, submission_id, actor)
        return previous_status

    # ------------------------------------------------------------------
    # batch claims
    # ------------------------------------------------------------------
    def claim_batch(self, kind: str, limit: int, ttl_seconds: int, max_attempts: int = 3) -> tuple:
        """Claim up to ``limit`` pending rows for one worker, oldest first.

        Rows held by a live claim are skipped; claims older than ``ttl_seconds`` are taken over.
        Returns (claim_token, [proof_id, ...]).
        """
        predicate = CLAIM_PREDICATES[kind]
        token = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(seconds=ttl_seconds)).isoformat()
        with self._conn(write=True) as con:
            con.execute(
                "UPDATE payment_proofs SET claimed_by=:token, claimed_at=:now WHERE id IN ("
                "  SELECT id FROM payment_proofs WHERE verification_status='pending' "
                f"  AND {predicate} "
                "  AND (claimed_by IS NULL OR claimed_at < :stale) "
                "  ORDER BY created_at, id LIMIT :limit)",
                {"token": token, "now": now.isoformat(), "stale": stale_before,
                 "limit": limit, "max_attempts": max_attempts},
            )
            rows = con.execute(
                "SELECT id FROM payment_proofs WHERE claimed_by=? ORDER BY created_at, id", (token,)
            ).fetchall()
        return token, [r["id"] for r in rows]

    def release_claims(self, token: str):
        with self._conn(write=True) as con:
            con.execute("UPDATE payment_proofs SET claimed_by=NULL, claimed_at=NULL WHERE claimed_by=?", (token,))

    # ------------------------------------------------------------------
    # bulk jobs
    # ------------------------------------------------------------------
    def create_job(self, action: str, user_id: str, proof_ids: List[str]) -> BulkVerificationJob:
        now = _now()
        job = BulkVerificationJob(
            id=uuid.uuid4().hex,
            user_id=user_id,
            action=action,
            total_proofs=len(proof_ids),
            proof_ids=list(proof_ids),
            status="processing",
            started_at=now,
            created_at=now,
        )
        with self._conn(write=True) as con:
            con.execute(
                "INSERT INTO bulk_verification_jobs(id, user_id, action, total_proofs, status, proof_ids_json, "
                "started_at, created_at) VALUES (?,?,?,?,?,?,?,?)",
                (job.id, user_id, action, job.total_proofs, job.status, _dumps(job.proof_ids), now, now),
            )
        return job

    def record_job_item(self, job_id: str, succeeded: bool):
        column = "successful_proofs" if succeeded else "failed_proofs"
        with self._conn(write=True) as con:
            con.execute(
                f"UPDATE bulk_verification_jobs SET processed_proofs = processed_proofs + 1, "
                f"{column} = {column} + 1 WHERE id=?",
                (job_id,),
            )

    def finish_job(self, job_id: str, status: str, error_message: Optional[str] = None):
        with self._conn(write=True) as con:
            con.execute(
                "UPDATE bulk_verification_jobs SET status=?, error_message=?, completed_at=? WHERE id=?",
                (status, error_message, _now(), job_id),
            )

    def get_job(self, job_id: str) -> Optional[BulkVerificationJob]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM bulk_verification_jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            return None
        return BulkVerificationJob(
            id=row["id"],
            user_id=row["user_id"],
            action=row["action"],
            total_proofs=row["total_proofs"],
            proof_ids=json.loads(row["proof_ids_json"]),
            processed_proofs=row["processed_proofs"],
            successful_proofs=row["successful_proofs"],
            failed_proofs=row["failed_proofs"],
            status=row["status"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # ledger
    # ------------------------------------------------------------------
    def _write_log(self, con, proof_id, submission_id, actor, action, previous_status, new_status,
                   notes, metadata):
        order_id = None
        if submission_id:
            row = con.execute("SELECT order_id FROM submissions WHERE id=?", (submission_id,)).fetchone()
            order_id = row["order_id"] if row else None
        con.execute(
            "INSERT INTO verification_logs(payment_proof_id, submission_id, order_id, actor, action, "
            "previous_status, new_status, notes, metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
            (proof_id, submission_id, order_id, actor, action, previous_status, new_status, notes,
             _dumps(metadata or {}), _now()),
        )

    def list_logs(self, proof_id: str) -> List[VerificationLogEntry]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM verification_logs WHERE payment_proof_id=? ORDER BY id", (proof_id,)
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def log_entries_since(self, after_id: int = 0, limit: int = 500) -> List[VerificationLogEntry]:
        """Ledger rows with id > after_id, for consumers polling for new transitions."""
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM verification_logs WHERE id > ? ORDER BY id LIMIT ?", (after_id, limit)
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    # ------------------------------------------------------------------
    # stats
    # ------------------------------------------------------------------
    def queue_stats(self, seller_id: str) -> dict:
        with self._conn() as con:
            rows = con.execute(
                "SELECT verification_status, ai_confidence_score, created_at, verified_at "
                "FROM payment_proofs WHERE seller_id=?",
                (seller_id,),
            ).fetchall()

        pending = [r for r in rows if r["verification_status"] == PENDING]
        durations = []
        for r in rows:
            if r["verified_at"] and r["created_at"]:
                delta = datetime.fromisoformat(r["verified_at"]) - datetime.fromisoformat(r["created_at"])
                durations.append(delta.total_seconds() / 60.0)
        return {
            "pending_verifications": len(pending),
            "flagged_verifications": sum(1 for r in rows if r["verification_status"] == FLAGGED),
            "requires_review": sum(1 for r in rows if r["verification_status"] == REQUIRES_REVIEW),
            "high_confidence_pending": sum(
                1 for r in pending if r["ai_confidence_score"] is not None and r["ai_confidence_score"] >= 0.8
            ),
            "low_confidence_pending": sum(
                1 for r in pending if r["ai_confidence_score"] is not None and r["ai_confidence_score"] < 0.5
            ),
            "oldest_pending": min((r["created_at"] for r in pending), default=None),
            "avg_processing_minutes": round(sum(durations) / len(durations), 2) if durations else None,
        }


UPDATABLE_COLUMNS = {
    "submission_id",
    "ai_confidence_score",
    "extracted_amount",
    "extracted_reference",
    "extracted_method",
    "extraction_json",
    "processing_attempts",
    "last_processed_at",
    "verified_by",
    "verified_at",
    "rejection_reason",
    "manual_review_notes",
    "suggested_submission_id",
}


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


def _row_to_submission(row) -> Submission:
    return Submission(
        id=row["id"],
        order_id=row["order_id"],
        seller_id=row["seller_id"],
        total_amount=row["total_amount"],
        currency=row["currency"],
        payment_reference=row["payment_reference"],
        status=row["status"],
        payment_method=row["payment_method"],
        created_at=row["created_at"] or "",
    )


def _row_to_proof(row) -> PaymentProof:
    extraction = None
    if row["extraction_json"]:
        extraction = ExtractionResult.from_dict(json.loads(row["extraction_json"]))
    return PaymentProof(
        id=row["id"],
        submission_id=row["submission_id"],
        seller_id=row["seller_id"],
        file_url=row["file_url"],
        payment_method_id=row["payment_method_id"],
        uploaded_by_name=row["uploaded_by_name"],
        uploaded_by_phone=row["uploaded_by_phone"],
        ai_confidence_score=row["ai_confidence_score"],
        extracted_amount=row["extracted_amount"],
        extracted_reference=row["extracted_reference"],
        extracted_method=row["extracted_method"],
        extraction=extraction,
        processing_attempts=row["processing_attempts"],
        last_processed_at=row["last_processed_at"],
        verification_status=row["verification_status"],
        verified_by=row["verified_by"],
        verified_at=row["verified_at"],
        rejection_reason=row["rejection_reason"],
        flagged_reasons=json.loads(row["flagged_reasons_json"] or "[]"),
        manual_review_notes=row["manual_review_notes"],
        suggested_submission_id=row["suggested_submission_id"],
        created_at=row["created_at"] or "",
        updated_at=row["updated_at"] or "",
    )


def _row_to_log(row) -> VerificationLogEntry:
    return VerificationLogEntry(
        id=row["id"],
        payment_proof_id=row["payment_proof_id"],
        submission_id=row["submission_id"],
        order_id=row["order_id"],
        actor=row["actor"],
        action=row["action"],
        previous_status=row["previous_status"],
        new_status=row["new_status"],
        notes=row["notes"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )
