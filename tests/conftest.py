import pytest

from payproof.config_loader import VerificationConfig
from payproof.models import ExtractedPayment, ExtractionResult, PaymentProof, Submission
from payproof.state_store import ProofStore


@pytest.fixture
def cfg():
    return VerificationConfig()


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setenv("PAYPROOF_STATE_DB", str(tmp_path / "state.db"))
    s = ProofStore()
    s.init_db()
    return s


@pytest.fixture
def add_submission(store):
    def _add(sub_id, total, reference=None, seller_id="seller-1", method=None,
             created_at="2025-01-01T00:00:00+00:00"):
        sub = Submission(
            id=sub_id,
            order_id=f"order-{sub_id}",
            seller_id=seller_id,
            total_amount=total,
            payment_reference=reference,
            payment_method=method,
            created_at=created_at,
        )
        store.upsert_submission(sub)
        return sub

    return _add


@pytest.fixture
def add_proof(store):
    def _add(proof_id, submission_id=None, seller_id="seller-1", extraction=None,
             payment_method_id=None, created_at=None):
        store.create_proof(
            PaymentProof(
                id=proof_id,
                submission_id=submission_id,
                seller_id=seller_id,
                file_url=f"/uploads/{proof_id}.jpg",
                payment_method_id=payment_method_id,
                created_at=created_at or "",
            )
        )
        if extraction is not None:
            store.save_extraction(proof_id, extraction)
        return store.get_proof(proof_id)

    return _add


def extraction(amount=None, reference=None, method=None, confidence=0.9, requires_review=False):
    return ExtractionResult(
        candidates=[ExtractedPayment(amount=amount, reference=reference, method=method, confidence=confidence)],
        overall_confidence=confidence,
        requires_review=requires_review,
    )


@pytest.fixture
def make_extraction():
    return extraction
