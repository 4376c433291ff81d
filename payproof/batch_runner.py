import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from typing import Callable, List, Optional

from .config_loader import VerificationConfig
from .errors import InvalidReviewActionError
from .models import ACTION_BULK_APPROVED, ACTION_BULK_REJECTED, SYSTEM_ACTOR, BulkVerificationJob
from .state_store import ProofStore
from .verifier import ProofVerifier

logger = logging.getLogger(__name__)

JOB_AUTO_VERIFY = "auto_verify"
JOB_FLAG_SUSPICIOUS = "flag_suspicious"
JOB_RETRY_EXTRACTION = "retry_extraction"


class BatchRunner:
    """Background sweeps over pending proofs.

    Each sweep claims one bounded, oldest-first batch, fans it out to a thread
    pool running the verifier's per-proof methods, and records the run as a
    BulkVerificationJob. A failing row is counted and logged; the sweep goes on.
    """

    def __init__(self, store: ProofStore, verifier: ProofVerifier, config: VerificationConfig):
        self.store = store
        self.verifier = verifier
        self.config = config

    def run_auto_verify_sweep(self) -> BulkVerificationJob:
        return self._sweep("auto_verify", JOB_AUTO_VERIFY, self.verifier.auto_verify)

    def run_flag_sweep(self) -> BulkVerificationJob:
        return self._sweep("flag", JOB_FLAG_SUSPICIOUS, self.verifier.apply_flag_rules)

    def run_retry_sweep(self) -> BulkVerificationJob:
        return self._sweep("retry", JOB_RETRY_EXTRACTION, self.verifier.process_proof)

    def run_bulk_review(self, proof_ids: List[str], action: str, reviewer: str,
                        notes: Optional[str] = None, rejection_reason: Optional[str] = None) -> BulkVerificationJob:
        """Approve or reject many proofs at once; conflicts and locked proofs count as failed rows."""
        if action == "approve":
            job_action = ACTION_BULK_APPROVED
        elif action == "reject":
            job_action = ACTION_BULK_REJECTED
        else:
            raise InvalidReviewActionError(f"bulk review supports approve/reject, not {action!r}")

        details = {"reviewer": reviewer, "notes": notes, "rejection_reason": rejection_reason}
        handler = partial(self._review_one, action=action, details=details, ledger_action=job_action)
        job = self.store.create_job(job_action, reviewer, list(dict.fromkeys(proof_ids)))
        self._run_job(job, handler)
        return self.store.get_job(job.id)

    def _review_one(self, proof_id: str, action: str, details: dict, ledger_action: str):
        return self.verifier.review_decision(proof_id, action, details, ledger_action=ledger_action)

    def _sweep(self, kind: str, job_action: str, handler: Callable[[str], object]) -> BulkVerificationJob:
        batch = self.config.batch
        token, proof_ids = self.store.claim_batch(
            kind, batch.batch_size, batch.claim_ttl_seconds, self.config.max_processing_attempts
        )
        try:
            job = self.store.create_job(job_action, SYSTEM_ACTOR, proof_ids)
            logger.info("%s sweep: claimed %d proofs (job %s)", job_action, len(proof_ids), job.id)
            self._run_job(job, handler)
        finally:
            self.store.release_claims(token)
        return self.store.get_job(job.id)

    def _run_job(self, job: BulkVerificationJob, handler: Callable[[str], object]):
        try:
            with ThreadPoolExecutor(max_workers=self.config.batch.workers) as pool:
                futures = {pool.submit(handler, proof_id): proof_id for proof_id in job.proof_ids}
                for fut in as_completed(futures):
                    proof_id = futures[fut]
                    try:
                        fut.result()
                    except Exception:
                        logger.error("%s: proof %s failed", job.action, proof_id, exc_info=True)
                        self._record(job, proof_id, succeeded=False)
                    else:
                        self._record(job, proof_id, succeeded=True)
        except Exception as e:
            logger.exception("%s job %s aborted", job.action, job.id)
            self.store.finish_job(job.id, "failed", str(e))
            return
        self.store.finish_job(job.id, "completed")

    def _record(self, job: BulkVerificationJob, proof_id: str, succeeded: bool):
        try:
            self.store.record_job_item(job.id, succeeded=succeeded)
        except sqlite3.Error:
            logger.error("%s job %s: could not count proof %s", job.action, job.id, proof_id, exc_info=True)
