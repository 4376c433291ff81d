from dataclasses import dataclass, field
from typing import Optional


# verification_status
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
FLAGGED = "flagged"
REQUIRES_REVIEW = "requires_review"

VERIFICATION_STATUSES = (PENDING, APPROVED, REJECTED, FLAGGED, REQUIRES_REVIEW)
TERMINAL_STATUSES = (APPROVED, REJECTED)

# verification_logs.action
ACTION_SUBMITTED = "submitted"
ACTION_REVIEWED = "reviewed"
ACTION_APPROVED = "approved"
ACTION_REJECTED = "rejected"
ACTION_FLAGGED = "flagged"
ACTION_BULK_APPROVED = "bulk_approved"
ACTION_BULK_REJECTED = "bulk_rejected"

# flag tags
FLAG_SIGNIFICANT_AMOUNT_MISMATCH = "significant_amount_mismatch"
FLAG_LOW_AI_CONFIDENCE = "low_ai_confidence"
FLAG_MULTIPLE_PROCESSING_FAILURES = "multiple_processing_failures"
FLAG_DUPLICATE_REFERENCE = "duplicate_reference"

SYSTEM_ACTOR = "system"


@dataclass
class Submission:
    id: str
    order_id: str
    seller_id: str
    total_amount: float
    currency: str = "PHP"
    payment_reference: Optional[str] = None
    status: str = "pending"  # pending|paid|...
    payment_method: Optional[str] = None
    created_at: str = ""


@dataclass
class PaymentMethod:
    id: str
    seller_id: str
    method_type: str
    display_name: str = ""
    auto_verify_threshold: Optional[float] = None
    requires_proof: bool = True
    is_active: bool = True


@dataclass
class ExtractedPayment:
    amount: Optional[float] = None
    reference: Optional[str] = None
    method: Optional[str] = None
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "reference": self.reference,
            "method": self.method,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedPayment":
        amount = data.get("amount")
        return cls(
            amount=float(amount) if amount is not None else None,
            reference=data.get("reference") or None,
            method=data.get("method") or None,
            confidence=float(data.get("confidence") or 0.0),
        )


@dataclass
class ExtractionResult:
    candidates: list[ExtractedPayment]
    overall_confidence: float
    requires_review: bool = False
    model: Optional[str] = None

    def primary(self) -> Optional[ExtractedPayment]:
        """Highest-confidence candidate, used for the proof's extracted_* columns."""
        if not self.candidates:
            return None
        return max(self.candidates, key=lambda c: c.confidence)

    def to_dict(self) -> dict:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "overall_confidence": self.overall_confidence,
            "requires_review": self.requires_review,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractionResult":
        return cls(
            candidates=[ExtractedPayment.from_dict(c) for c in data.get("candidates") or []],
            overall_confidence=float(data.get("overall_confidence") or 0.0),
            requires_review=bool(data.get("requires_review", False)),
            model=data.get("model"),
        )


@dataclass
class PaymentProof:
    id: str
    submission_id: Optional[str]
    seller_id: str
    file_url: str
    payment_method_id: Optional[str] = None
    uploaded_by_name: Optional[str] = None
    uploaded_by_phone: Optional[str] = None
    ai_confidence_score: Optional[float] = None
    extracted_amount: Optional[float] = None
    extracted_reference: Optional[str] = None
    extracted_method: Optional[str] = None
    extraction: Optional[ExtractionResult] = None
    processing_attempts: int = 0
    last_processed_at: Optional[str] = None
    verification_status: str = PENDING
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    flagged_reasons: list[str] = field(default_factory=list)
    manual_review_notes: Optional[str] = None
    suggested_submission_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.verification_status in TERMINAL_STATUSES


@dataclass
class MatchScore:
    value: float
    reasons: list[str]


@dataclass
class RankedMatch:
    candidate: ExtractedPayment
    submission: Submission
    score: MatchScore
    amount_delta: Optional[float]

    def to_dict(self) -> dict:
        return {
            "submission_id": self.submission.id,
            "score": round(self.score.value, 4),
            "reasons": list(self.score.reasons),
            "amount_delta": self.amount_delta,
            "candidate": self.candidate.to_dict(),
        }


@dataclass
class VerificationLogEntry:
    id: int
    payment_proof_id: str
    submission_id: Optional[str]
    order_id: Optional[str]
    actor: str
    action: str
    previous_status: Optional[str]
    new_status: Optional[str]
    notes: Optional[str]
    metadata: dict
    created_at: str


@dataclass
class BulkVerificationJob:
    id: str
    user_id: str
    action: str
    total_proofs: int
    proof_ids: list[str]
    processed_proofs: int = 0
    successful_proofs: int = 0
    failed_proofs: int = 0
    status: str = "pending"  # pending|processing|completed|failed
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = ""


@dataclass
class ProcessResult:
    proof_id: str
    status: str
    best_match: Optional[RankedMatch]
    match_candidates: list[RankedMatch]
    requires_review: bool
    flagged_reasons: list[str] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass
class ReviewResult:
    proof_id: str
    status: str
    previous_status: str
