"""
Fraud heuristics for payment proofs.

Each rule looks at a ProofFacts snapshot and says whether its tag applies.
Rules are independent and cumulative: every firing tag is reported.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config_loader import VerificationConfig
from .models import (
    FLAG_DUPLICATE_REFERENCE,
    FLAG_LOW_AI_CONFIDENCE,
    FLAG_MULTIPLE_PROCESSING_FAILURES,
    FLAG_SIGNIFICANT_AMOUNT_MISMATCH,
    PaymentProof,
    Submission,
)


@dataclass(frozen=True)
class ProofFacts:
    extracted_amount: Optional[float]
    expected_amount: Optional[float]
    ai_confidence_score: Optional[float]
    processing_attempts: int
    reference_already_approved: bool

    @classmethod
    def from_proof(
        cls,
        proof: PaymentProof,
        submission: Optional[Submission],
        *,
        reference_already_approved: bool = False,
    ) -> "ProofFacts":
        return cls(
            extracted_amount=proof.extracted_amount,
            expected_amount=submission.total_amount if submission else None,
            ai_confidence_score=proof.ai_confidence_score,
            processing_attempts=proof.processing_attempts,
            reference_already_approved=reference_already_approved,
        )


def _significant_amount_mismatch(f: ProofFacts, cfg: VerificationConfig) -> bool:
    if f.extracted_amount is None or f.expected_amount is None:
        return False
    return round(abs(f.extracted_amount - f.expected_amount), 2) > cfg.significant_mismatch_amount


def _low_ai_confidence(f: ProofFacts, cfg: VerificationConfig) -> bool:
    return f.ai_confidence_score is not None and f.ai_confidence_score < cfg.low_confidence_threshold


def _multiple_processing_failures(f: ProofFacts, cfg: VerificationConfig) -> bool:
    return f.processing_attempts > cfg.max_processing_attempts


def _duplicate_reference(f: ProofFacts, cfg: VerificationConfig) -> bool:
    return f.reference_already_approved


RULES: Dict[str, Callable[[ProofFacts, VerificationConfig], bool]] = {
    FLAG_SIGNIFICANT_AMOUNT_MISMATCH: _significant_amount_mismatch,
    FLAG_LOW_AI_CONFIDENCE: _low_ai_confidence,
    FLAG_MULTIPLE_PROCESSING_FAILURES: _multiple_processing_failures,
    FLAG_DUPLICATE_REFERENCE: _duplicate_reference,
}


def evaluate_flags(facts: ProofFacts, cfg: VerificationConfig) -> List[str]:
    return [tag for tag, rule in RULES.items() if rule(facts, cfg)]


def merge_reasons(existing: List[str], new: List[str]) -> List[str]:
    """Union keeping first-seen order; reasons are never dropped."""
    merged = list(existing)
    for r in new:
        if r not in merged:
            merged.append(r)
    return merged
