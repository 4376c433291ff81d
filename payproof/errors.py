class PaymentProofError(Exception):
    """Base class for verification engine errors."""


class ConfigError(PaymentProofError):
    pass


class TransientExtractionError(PaymentProofError):
    """Extraction service timed out or returned a retryable status (429/5xx)."""


class PermanentExtractionError(PaymentProofError):
    """Extraction service rejected the image; retrying will not help."""


class ProofNotFoundError(PaymentProofError):
    pass


class ProofLockedError(PaymentProofError):
    """The proof is approved and only accepts audit annotations."""


class ApprovalConflictError(PaymentProofError):
    """The submission already has an approved proof."""

    def __init__(self, submission_id: str, approved_proof_id: str | None = None):
        self.submission_id = submission_id
        self.approved_proof_id = approved_proof_id
        msg = f"submission {submission_id} already has an approved proof"
        if approved_proof_id:
            msg += f" ({approved_proof_id})"
        super().__init__(msg)


class InvalidReviewActionError(PaymentProofError):
    pass
