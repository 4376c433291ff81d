"""
Automated verification decisions.

Maps the best (extraction candidate, submission) pair to one of:

  approved         score >= auto, amount within tolerance, submission unpaid,
                   amount within the payment method's auto-verify threshold
  requires_review  everything else, with the best submission kept as a
                   suggestion when the score clears the suggest threshold
  flagged          the matched submission already has an approved proof

The functions here are pure; persistence and the atomic approval live in
state_store / verifier.
"""

from dataclasses import dataclass, field
from typing import Optional

from .config_loader import VerificationConfig
from .models import (
    ACTION_APPROVED,
    ACTION_FLAGGED,
    ACTION_REVIEWED,
    APPROVED,
    FLAG_DUPLICATE_REFERENCE,
    FLAGGED,
    REQUIRES_REVIEW,
    RankedMatch,
)

NO_CONFIDENT_MATCH = "no confident match"


@dataclass
class Decision:
    status: str
    action: str
    notes: str
    best_match: Optional[RankedMatch] = None
    suggested_submission_id: Optional[str] = None
    flagged_reasons: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def is_auto_approval(self) -> bool:
        return self.status == APPROVED


def within_auto_verify_threshold(total_amount: float, threshold: Optional[float]) -> bool:
    return threshold is None or total_amount <= threshold


def duplicate_decision(best: RankedMatch) -> Decision:
    return Decision(
        status=FLAGGED,
        action=ACTION_FLAGGED,
        notes=f"submission {best.submission.id} already has an approved payment proof",
        best_match=best,
        flagged_reasons=[FLAG_DUPLICATE_REFERENCE],
        metadata={"autoFlagged": True, "matchScore": best.score.value, "submissionId": best.submission.id},
    )


def decide(
    best: Optional[RankedMatch],
    cfg: VerificationConfig,
    *,
    submission_has_approved_proof: bool = False,
    auto_verify_threshold: Optional[float] = None,
) -> Decision:
    if best is None:
        return Decision(status=REQUIRES_REVIEW, action=ACTION_REVIEWED, notes=NO_CONFIDENT_MATCH)

    if submission_has_approved_proof:
        return duplicate_decision(best)

    score = best.score.value
    meta = {
        "matchScore": score,
        "confidence": best.candidate.confidence,
        "submissionId": best.submission.id,
        "reasons": list(best.score.reasons),
    }

    if score < cfg.suggest_threshold:
        return Decision(
            status=REQUIRES_REVIEW,
            action=ACTION_REVIEWED,
            notes=NO_CONFIDENT_MATCH,
            best_match=best,
            metadata=meta,
        )

    if score >= cfg.auto_threshold:
        blockers = []
        if best.amount_delta is None or best.amount_delta > cfg.amount_tolerance:
            blockers.append("amount outside tolerance")
        if not within_auto_verify_threshold(best.submission.total_amount, auto_verify_threshold):
            blockers.append("above auto-verify threshold")
        if not blockers:
            return Decision(
                status=APPROVED,
                action=ACTION_APPROVED,
                notes="Auto-verified by system",
                best_match=best,
                metadata={**meta, "autoVerified": True},
            )
        return Decision(
            status=REQUIRES_REVIEW,
            action=ACTION_REVIEWED,
            notes=f"high-scoring match needs review: {', '.join(blockers)}",
            best_match=best,
            suggested_submission_id=best.submission.id,
            metadata={**meta, "blockers": blockers},
        )

    return Decision(
        status=REQUIRES_REVIEW,
        action=ACTION_REVIEWED,
        notes=f"suggested match {best.submission.id} (score {score:.2f})",
        best_match=best,
        suggested_submission_id=best.submission.id,
        metadata=meta,
    )
