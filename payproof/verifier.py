"""
Single-proof verification pipeline and human review.

process_proof runs one proof through extract -> score -> fraud pre-check ->
decide -> ledger. The batch sweeps call the same methods, so the synchronous
and background entry points share one algorithm.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config_loader import VerificationConfig
from .decision_engine import Decision, decide, duplicate_decision
from .errors import (
    ApprovalConflictError,
    ConfigError,
    InvalidReviewActionError,
    PermanentExtractionError,
    ProofLockedError,
    TransientExtractionError,
)
from .extraction_client import ExtractionClient, load_image
from .fraud_rules import ProofFacts, evaluate_flags
from .matcher import rank_candidates
from .models import (
    ACTION_APPROVED,
    ACTION_FLAGGED,
    ACTION_REJECTED,
    ACTION_REVIEWED,
    APPROVED,
    FLAG_MULTIPLE_PROCESSING_FAILURES,
    FLAGGED,
    PENDING,
    REJECTED,
    REQUIRES_REVIEW,
    SYSTEM_ACTOR,
    PaymentProof,
    ProcessResult,
    RankedMatch,
    ReviewResult,
    Submission,
)
from .state_store import ProofStore

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ("approve", "reject", "modify", "annotate")

# statuses the automated pipeline may still move
AUTOMATABLE = (PENDING, REQUIRES_REVIEW)
# statuses a reviewer may override; approved proofs only take annotations
REVIEWABLE = (PENDING, FLAGGED, REQUIRES_REVIEW, REJECTED)


class ProofVerifier:
    def __init__(
        self,
        store: ProofStore,
        config: VerificationConfig,
        extraction_client: Optional[ExtractionClient] = None,
        image_loader: Callable[[str], bytes] = load_image,
    ):
        self.store = store
        self.config = config
        self.extraction_client = extraction_client
        self.image_loader = image_loader

    # ------------------------------------------------------------------
    # automated pipeline
    # ------------------------------------------------------------------
    def process_proof(self, proof_id: str, image_ref: Optional[str] = None,
                      context_hint: Optional[dict] = None) -> ProcessResult:
        """Evaluate one proof synchronously.

        Extraction runs when ``image_ref`` is given or the proof has none stored yet.
        ``context_hint`` may carry ``submission_id`` to narrow matching for a proof
        uploaded without one. Flagged and terminal proofs are returned unchanged.
        A requires_review proof is re-evaluated in full, fraud pre-check included,
        so a re-run never approves what the rules would flag.
        """
        proof = self.store.get_proof(proof_id)
        if proof.verification_status not in AUTOMATABLE:
            return self._result(proof, notes=f"proof is {proof.verification_status}; not re-evaluated")

        if image_ref is not None or proof.extraction is None:
            failed = self._extract(proof, image_ref)
            if failed is not None:
                return failed
            proof = self.store.get_proof(proof_id)

        return self._evaluate(proof, context_hint=context_hint)

    def auto_verify(self, proof_id: str) -> ProcessResult:
        """Evaluation used by the auto-verify sweep.

        Approvals and decision-engine flags (submission already paid) are applied;
        review outcomes and fraud-rule hits leave the row untouched for the flag sweep.
        """
        proof = self.store.get_proof(proof_id)
        if proof.verification_status != PENDING or proof.extraction is None:
            return self._result(proof)
        return self._evaluate(proof, auto_only=True)

    def apply_flag_rules(self, proof_id: str) -> ProcessResult:
        proof = self.store.get_proof(proof_id)
        if proof.verification_status != PENDING:
            return self._result(proof)
        pool = self._candidate_pool(proof, None)
        ranked = self._rank(proof, pool)
        best = ranked[0] if ranked else None
        reasons = self._heuristic_reasons(proof, pool, best)
        if not reasons:
            return self._result(proof, best, ranked)
        return self._flag(proof, reasons, best, ranked)

    def _extract(self, proof: PaymentProof, image_ref: Optional[str]) -> Optional[ProcessResult]:
        if self.extraction_client is None:
            raise ConfigError("no extraction client configured")
        try:
            image = self.image_loader(image_ref or proof.file_url)
            extraction = self.extraction_client.extract(image)
        except TransientExtractionError as e:
            return self._transient_failure(proof, e)
        except PermanentExtractionError as e:
            self.store.increment_attempts(proof.id)
            logger.warning("proof %s: extraction failed permanently: %s", proof.id, e)
            self.store.transition(
                proof.id,
                new_status=REQUIRES_REVIEW,
                action=ACTION_REVIEWED,
                notes=f"Extraction failed: {e}",
                metadata={"extractionError": str(e), "permanent": True},
                allowed_from=AUTOMATABLE,
                updates={"manual_review_notes": f"Extraction failed: {e}"},
            )
            return self._result(self.store.get_proof(proof.id), notes=f"Extraction failed: {e}")

        if not self.store.save_extraction(proof.id, extraction):
            # resolved by someone else while we were extracting
            return self._result(self.store.get_proof(proof.id))
        return None

    def _transient_failure(self, proof: PaymentProof, error: Exception) -> ProcessResult:
        attempts = self.store.increment_attempts(proof.id)
        logger.warning("proof %s: extraction unavailable (attempt %d): %s", proof.id, attempts, error)
        if attempts > self.config.max_processing_attempts:
            self._flag(
                proof,
                [FLAG_MULTIPLE_PROCESSING_FAILURES],
                None,
                [],
                metadata={"processingAttempts": attempts, "lastError": str(error)},
            )
            return self._result(self.store.get_proof(proof.id))
        return self._result(self.store.get_proof(proof.id), notes=f"extraction unavailable, will retry ({attempts})")

    def _evaluate(self, proof: PaymentProof, context_hint: Optional[dict] = None,
                  auto_only: bool = False) -> ProcessResult:
        pool = self._candidate_pool(proof, context_hint)
        ranked = self._rank(proof, pool)
        best = ranked[0] if ranked else None

        reasons = self._heuristic_reasons(proof, pool, best)
        if reasons:
            if auto_only:
                return self._result(proof, best, ranked)
            return self._flag(proof, reasons, best, ranked)

        approved_elsewhere = False
        if best is not None:
            holder = self.store.approved_proof_for_submission(best.submission.id)
            approved_elsewhere = holder is not None and holder != proof.id

        decision = decide(
            best,
            self.config,
            submission_has_approved_proof=approved_elsewhere,
            auto_verify_threshold=self._auto_verify_threshold(proof),
        )
        if decision.is_auto_approval and proof.extraction and proof.extraction.requires_review:
            decision = Decision(
                status=REQUIRES_REVIEW,
                action=ACTION_REVIEWED,
                notes="extraction service requested manual review",
                best_match=best,
                suggested_submission_id=best.submission.id,
                metadata=decision.metadata,
            )
        if auto_only and decision.status == REQUIRES_REVIEW:
            return self._result(proof, best, ranked)
        return self._apply(proof, decision, ranked)

    def _apply(self, proof: PaymentProof, decision: Decision, ranked: List[RankedMatch]) -> ProcessResult:
        best = decision.best_match
        metadata = dict(decision.metadata)
        metadata["matchCandidates"] = [m.to_dict() for m in self._top(ranked)]

        if decision.status == APPROVED:
            try:
                previous = self.store.approve_if_unclaimed(
                    proof.id,
                    best.submission.id,
                    actor=SYSTEM_ACTOR,
                    action=ACTION_APPROVED,
                    notes=decision.notes,
                    metadata=metadata,
                    allowed_from=AUTOMATABLE,
                )
            except ApprovalConflictError:
                logger.info("proof %s lost approval race for submission %s", proof.id, best.submission.id)
                dup = duplicate_decision(best)
                return self._flag(proof, dup.flagged_reasons, best, ranked, notes=dup.notes, metadata=dup.metadata)
            return self._result(self.store.get_proof(proof.id), best, ranked,
                                notes=None if previous is not None else "proof changed concurrently")

        if decision.status == FLAGGED:
            return self._flag(proof, decision.flagged_reasons, best, ranked,
                              notes=decision.notes, metadata=decision.metadata)

        self.store.transition(
            proof.id,
            new_status=REQUIRES_REVIEW,
            action=ACTION_REVIEWED,
            notes=decision.notes,
            metadata=metadata,
            allowed_from=AUTOMATABLE,
            updates={"suggested_submission_id": decision.suggested_submission_id},
        )
        return self._result(self.store.get_proof(proof.id), best, ranked, notes=decision.notes)

    def _flag(self, proof: PaymentProof, reasons: List[str], best: Optional[RankedMatch],
              ranked: List[RankedMatch], notes: Optional[str] = None,
              metadata: Optional[dict] = None) -> ProcessResult:
        notes = notes or "Auto-flagged by system: " + ", ".join(reasons)
        meta = {"autoFlagged": True, "reasons": list(reasons)}
        meta.update(metadata or {})
        updates = {}
        if best is not None:
            updates["suggested_submission_id"] = best.submission.id
        self.store.transition(
            proof.id,
            new_status=FLAGGED,
            action=ACTION_FLAGGED,
            notes=notes,
            metadata=meta,
            add_flags=reasons,
            updates=updates,
        )
        return self._result(self.store.get_proof(proof.id), best, ranked, notes=notes)

    def _candidate_pool(self, proof: PaymentProof, context_hint: Optional[dict]) -> List[Submission]:
        submission_id = proof.submission_id or (context_hint or {}).get("submission_id")
        if submission_id:
            sub = self.store.get_submission(submission_id)
            pool = [sub] if sub else []
        else:
            pool = self.store.list_pending_submissions(proof.seller_id)
        method = self.store.get_payment_method(proof.payment_method_id)
        if method is None:
            return pool
        # the seller's configured method stands in when the submission does not name one
        return [s if s.payment_method else replace(s, payment_method=method.method_type) for s in pool]

    def _rank(self, proof: PaymentProof, pool: List[Submission]) -> List[RankedMatch]:
        candidates = proof.extraction.candidates if proof.extraction else []
        return rank_candidates(candidates, pool, self.config)

    def _heuristic_reasons(self, proof: PaymentProof, pool: List[Submission],
                           best: Optional[RankedMatch]) -> List[str]:
        if proof.submission_id:
            target = pool[0] if pool else None
        else:
            target = best.submission if best else None
        facts = ProofFacts.from_proof(
            proof,
            target,
            reference_already_approved=self.store.reference_approved_elsewhere(proof.extracted_reference, proof.id),
        )
        return evaluate_flags(facts, self.config)

    def _auto_verify_threshold(self, proof: PaymentProof) -> Optional[float]:
        method = self.store.get_payment_method(proof.payment_method_id)
        return method.auto_verify_threshold if method else None

    def _top(self, ranked: List[RankedMatch]) -> List[RankedMatch]:
        return ranked[: self.config.max_suggestions]

    def _result(self, proof: PaymentProof, best: Optional[RankedMatch] = None,
                ranked: Optional[List[RankedMatch]] = None, notes: Optional[str] = None) -> ProcessResult:
        return ProcessResult(
            proof_id=proof.id,
            status=proof.verification_status,
            best_match=best,
            match_candidates=self._top(ranked or []),
            requires_review=proof.verification_status in (REQUIRES_REVIEW, FLAGGED),
            flagged_reasons=list(proof.flagged_reasons),
            notes=notes,
        )

    # ------------------------------------------------------------------
    # human review
    # ------------------------------------------------------------------
    def review_decision(self, proof_id: str, action: str, details: Optional[dict] = None,
                        *, ledger_action: Optional[str] = None) -> ReviewResult:
        """Apply a reviewer's decision.

        details keys: reviewer, notes, rejection_reason, submission_id (approve),
        amount / reference / method (modify). Approving a submission that already has an
        approved proof raises ApprovalConflictError; any action but annotate on an
        approved proof raises ProofLockedError.
        """
        if action not in REVIEW_ACTIONS:
            raise InvalidReviewActionError(f"unknown review action: {action!r}")
        details = details or {}
        actor = details.get("reviewer") or SYSTEM_ACTOR
        notes = details.get("notes")
        proof = self.store.get_proof(proof_id)

        if action == "annotate":
            if not notes:
                raise InvalidReviewActionError("annotate requires notes")
            self.store.annotate(proof_id, actor, notes, ledger_action or ACTION_REVIEWED, {"annotation": True})
            return ReviewResult(proof_id, proof.verification_status, proof.verification_status)

        if proof.verification_status == APPROVED:
            raise ProofLockedError(f"proof {proof_id} is approved; only annotations are accepted")

        if action == "approve":
            submission_id = details.get("submission_id") or proof.submission_id or proof.suggested_submission_id
            if not submission_id:
                raise InvalidReviewActionError("approve needs a submission_id for a proof without one")
            if self.store.get_submission(submission_id) is None:
                raise InvalidReviewActionError(f"unknown submission: {submission_id}")
            previous = self.store.approve_if_unclaimed(
                proof_id,
                submission_id,
                actor=actor,
                action=ledger_action or ACTION_APPROVED,
                notes=notes or "Manually approved",
                metadata={"manual": True},
                allowed_from=REVIEWABLE,
                review_notes=notes,
            )
            new_status = APPROVED
        elif action == "reject":
            reason = details.get("rejection_reason") or notes or "Rejected by reviewer"
            previous = self.store.transition(
                proof_id,
                new_status=REJECTED,
                action=ledger_action or ACTION_REJECTED,
                actor=actor,
                notes=notes or reason,
                metadata={"manual": True, "rejectionReason": reason},
                allowed_from=REVIEWABLE,
                updates={
                    "rejection_reason": reason,
                    "verified_by": actor,
                    "verified_at": datetime.now(timezone.utc).isoformat(),
                    **_notes(notes),
                },
            )
            new_status = REJECTED
        else:
            changes = {
                f"extracted_{key}": details[key]
                for key in ("amount", "reference", "method")
                if details.get(key) is not None
            }
            if not changes and not notes:
                raise InvalidReviewActionError("modify requires at least one field or notes")
            previous = self.store.transition(
                proof_id,
                new_status=REQUIRES_REVIEW,
                action=ledger_action or ACTION_REVIEWED,
                actor=actor,
                notes=notes or "Extracted fields corrected by reviewer",
                metadata={"manual": True, "modified": changes},
                allowed_from=REVIEWABLE,
                updates={**changes, **_notes(notes)},
            )
            new_status = REQUIRES_REVIEW

        if previous is None:
            raise ProofLockedError(f"proof {proof_id} was approved concurrently")
        return ReviewResult(proof_id, new_status, previous)

    def reprocess(self, proof_ids: List[str], actor: str = SYSTEM_ACTOR) -> List[str]:
        """Reset non-approved proofs to pending with no extraction; returns the ids that were reset."""
        reset = []
        for proof_id in proof_ids:
            previous = self.store.transition(
                proof_id,
                new_status=PENDING,
                action=ACTION_REVIEWED,
                actor=actor,
                notes="Reset for reprocessing",
                metadata={"reprocess": True},
                allowed_from=REVIEWABLE,
                updates={
                    "ai_confidence_score": None,
                    "extracted_amount": None,
                    "extracted_reference": None,
                    "extracted_method": None,
                    "extraction_json": None,
                    "processing_attempts": 0,
                    "suggested_submission_id": None,
                    "rejection_reason": None,
                },
            )
            if previous is None:
                logger.warning("proof %s is approved; not reprocessed", proof_id)
                continue
            reset.append(proof_id)
        return reset


def _notes(notes: Optional[str]) -> dict:
    return {"manual_review_notes": notes} if notes else {}
