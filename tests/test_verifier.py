from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
import requests

from payproof.errors import (
    ApprovalConflictError,
    ConfigError,
    InvalidReviewActionError,
    PermanentExtractionError,
    ProofLockedError,
    TransientExtractionError,
)
from payproof.extraction_client import ExtractionClient
from payproof.models import (
    APPROVED,
    FLAGGED,
    PENDING,
    REJECTED,
    REQUIRES_REVIEW,
    ExtractedPayment,
    ExtractionResult,
    PaymentMethod,
)
from payproof.verifier import ProofVerifier


def _client(result=None, side_effect=None):
    client = MagicMock(spec=ExtractionClient)
    if side_effect is not None:
        client.extract.side_effect = side_effect
    else:
        client.extract.return_value = result
    return client


def _verifier(store, cfg, client=None):
    return ProofVerifier(store, cfg, client, image_loader=lambda ref: b"image-bytes")


def _result(amount=None, reference=None, confidence=0.9, method=None):
    return ExtractionResult([ExtractedPayment(amount, reference, method, confidence)], confidence)


# ----------------------------------------------------------------------
# scenarios
# ----------------------------------------------------------------------
def test_exact_amount_and_reference_is_auto_approved(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 1250.00, reference="GC123456789")
    add_proof("p1", submission_id="sub-1")
    client = _client(_result(1250.00, "GC123456789", 0.92))

    result = _verifier(store, cfg, client).process_proof("p1")

    assert result.status == APPROVED
    assert result.requires_review is False
    assert result.best_match.submission.id == "sub-1"
    assert store.get_submission("sub-1").status == "paid"
    logs = store.list_logs("p1")
    assert [e.action for e in logs] == ["submitted", "approved"]
    assert logs[-1].metadata["autoVerified"] is True
    assert logs[-1].metadata["matchScore"] == pytest.approx(0.917)
    client.extract.assert_called_once_with(b"image-bytes")


def test_large_amount_deviation_is_flagged_regardless_of_score(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 890.00)
    add_proof("p1", submission_id="sub-1")
    client = _client(_result(980.00, None, 0.78))

    result = _verifier(store, cfg, client).process_proof("p1")

    assert result.status == FLAGGED
    assert "significant_amount_mismatch" in result.flagged_reasons
    assert result.requires_review is True
    assert store.get_submission("sub-1").status == "pending"
    assert store.list_logs("p1")[-1].notes == "Auto-flagged by system: significant_amount_mismatch"


def test_second_proof_with_same_reference_is_flagged(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00, reference="GC555")
    add_proof("p1")
    add_proof("p2")
    client = _client(_result(500.00, "GC555", 0.95))
    verifier = _verifier(store, cfg, client)

    first = verifier.process_proof("p1")
    second = verifier.process_proof("p2")

    assert first.status == APPROVED
    assert store.get_proof("p1").submission_id == "sub-1"
    assert second.status == FLAGGED
    assert "duplicate_reference" in second.flagged_reasons


def test_concurrent_same_reference_has_one_approval(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00, reference="GC555")
    ids = ["p1", "p2", "p3", "p4"]
    for pid in ids:
        add_proof(pid, extraction=_result(500.00, "GC555", 0.95))
    verifier = _verifier(store, cfg)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(verifier.process_proof, ids))

    statuses = [r.status for r in results]
    assert statuses.count(APPROVED) == 1
    assert statuses.count(FLAGGED) == 3
    for r in results:
        if r.status == FLAGGED:
            assert "duplicate_reference" in r.flagged_reasons


def test_repeated_extraction_timeouts_flag_the_proof(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00)
    add_proof("p1", submission_id="sub-1")
    client = _client(side_effect=TransientExtractionError("timeout"))
    verifier = _verifier(store, cfg, client)

    statuses = [verifier.process_proof("p1").status for _ in range(4)]

    assert statuses == [PENDING, PENDING, PENDING, FLAGGED]
    proof = store.get_proof("p1")
    assert proof.processing_attempts == 4
    assert proof.flagged_reasons == ["multiple_processing_failures"]

    # excluded from further automated attempts
    assert verifier.process_proof("p1").status == FLAGGED
    assert client.extract.call_count == 4
    _, claimed = store.claim_batch("retry", 10, 600)
    assert claimed == []


# ----------------------------------------------------------------------
# pipeline branches
# ----------------------------------------------------------------------
def test_unparseable_extraction_responses_count_as_attempts(store, cfg, add_proof):
    add_proof("p1")
    garbage = MagicMock()
    garbage.status_code = 200
    garbage.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    session = MagicMock(spec=requests.Session)
    session.post.return_value = garbage
    client = ExtractionClient(cfg.extraction, session=session, sleep=lambda s: None)
    verifier = _verifier(store, cfg, client)

    first = verifier.process_proof("p1")
    assert first.status == PENDING
    assert store.get_proof("p1").processing_attempts == 1

    for _ in range(3):
        verifier.process_proof("p1")
    proof = store.get_proof("p1")
    assert proof.verification_status == FLAGGED
    assert proof.flagged_reasons == ["multiple_processing_failures"]


def test_requires_review_rerun_still_applies_fraud_rules(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 890.00)
    add_proof("p1", submission_id="sub-1")
    store.transition("p1", new_status=REQUIRES_REVIEW, action="reviewed")
    client = _client(_result(980.00, None, 0.95))

    result = _verifier(store, cfg, client).process_proof("p1", image_ref="/uploads/p1-retake.jpg")

    assert result.status == FLAGGED
    assert result.flagged_reasons == ["significant_amount_mismatch"]


def test_permanent_extraction_failure_goes_to_review(store, cfg, add_proof):
    add_proof("p1")
    client = _client(side_effect=PermanentExtractionError("unsupported image"))

    result = _verifier(store, cfg, client).process_proof("p1")

    assert result.status == REQUIRES_REVIEW
    proof = store.get_proof("p1")
    assert "unsupported image" in proof.manual_review_notes
    assert proof.processing_attempts == 1


def test_missing_client_is_a_config_error(store, cfg, add_proof):
    add_proof("p1")
    with pytest.raises(ConfigError):
        _verifier(store, cfg).process_proof("p1")


def test_mid_score_keeps_suggestion(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00)
    add_proof("p1", extraction=_result(500.00, None, 0.5))

    result = _verifier(store, cfg).process_proof("p1")

    assert result.status == REQUIRES_REVIEW
    assert store.get_proof("p1").suggested_submission_id == "sub-1"
    assert result.match_candidates[0].submission.id == "sub-1"


def test_no_pending_submissions_needs_review(store, cfg, add_proof):
    add_proof("p1", extraction=_result(500.00, "X", 0.95))
    result = _verifier(store, cfg).process_proof("p1")
    assert result.status == REQUIRES_REVIEW
    assert result.best_match is None
    assert result.notes == "no confident match"


def test_auto_verify_threshold_blocks_approval(store, cfg, add_submission, add_proof):
    store.upsert_payment_method(PaymentMethod("pm-1", "seller-1", "gcash", auto_verify_threshold=1000.0))
    add_submission("sub-1", 1250.00, reference="GC123456789")
    add_proof("p1", submission_id="sub-1", payment_method_id="pm-1",
              extraction=_result(1250.00, "GC123456789", 0.92))

    result = _verifier(store, cfg).process_proof("p1")

    assert result.status == REQUIRES_REVIEW
    assert store.get_submission("sub-1").status == "pending"


def test_context_hint_narrows_the_pool(store, cfg, add_submission, add_proof):
    add_submission("sub-old", 500.00, created_at="2025-01-01T00:00:00+00:00")
    add_submission("sub-new", 500.00, reference="R1", created_at="2025-01-02T00:00:00+00:00")
    add_proof("p1", extraction=_result(500.00, None, 0.5))

    result = _verifier(store, cfg).process_proof("p1", context_hint={"submission_id": "sub-new"})
    assert [m.submission.id for m in result.match_candidates] == ["sub-new"]


def test_auto_verify_leaves_non_approvals_untouched(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00)
    add_proof("p1", extraction=_result(500.00, None, 0.5))

    result = _verifier(store, cfg).auto_verify("p1")

    assert result.status == PENDING
    assert [e.action for e in store.list_logs("p1")] == ["submitted"]


def test_extraction_review_request_blocks_auto_approval(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00, reference="GC1")
    res = _result(500.00, "GC1", 0.95)
    res.requires_review = True
    add_proof("p1", extraction=res)

    assert _verifier(store, cfg).process_proof("p1").status == REQUIRES_REVIEW


# ----------------------------------------------------------------------
# human review
# ----------------------------------------------------------------------
def test_manual_approve_conflicts_with_existing_approval(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00)
    add_proof("p1", submission_id="sub-1")
    add_proof("p2", submission_id="sub-1")
    verifier = _verifier(store, cfg)

    ok = verifier.review_decision("p1", "approve", {"reviewer": "u1"})
    assert ok.status == APPROVED
    assert ok.previous_status == PENDING
    assert store.get_proof("p1").verified_by == "u1"

    with pytest.raises(ApprovalConflictError):
        verifier.review_decision("p2", "approve", {"reviewer": "u1"})


def test_approved_proof_only_takes_annotations(store, cfg, add_submission, add_proof):
    add_submission("sub-1", 500.00)
    add_proof("p1", submission_id="sub-1")
    verifier = _verifier(store, cfg)
    verifier.review_decision("p1", "approve", {"reviewer": "u1"})

    for action in ("approve", "reject", "modify"):
        with pytest.raises(ProofLockedError):
            verifier.review_decision("p1", action, {"reviewer": "u2", "notes": "x", "amount": 1.0})

    result = verifier.review_decision("p1", "annotate", {"reviewer": "u2", "notes": "checked bank statement"})
    assert result.status == APPROVED
    last = store.list_logs("p1")[-1]
    assert last.notes == "checked bank statement"
    assert last.previous_status == last.new_status == APPROVED
    assert verifier.reprocess(["p1"]) == []


def test_reject_and_modify(store, cfg, add_proof):
    add_proof("p1")
    add_proof("p2")
    verifier = _verifier(store, cfg)

    rejected = verifier.review_decision("p1", "reject", {"reviewer": "u1", "rejection_reason": "edited image"})
    assert rejected.status == REJECTED
    assert store.get_proof("p1").rejection_reason == "edited image"

    modified = verifier.review_decision("p2", "modify", {"reviewer": "u1", "amount": 499.5, "reference": "GC9"})
    assert modified.status == REQUIRES_REVIEW
    proof = store.get_proof("p2")
    assert proof.extracted_amount == 499.5
    assert proof.extracted_reference == "GC9"
    assert store.list_logs("p2")[-1].action == "reviewed"


def test_invalid_review_requests(store, cfg, add_proof):
    add_proof("p1")
    verifier = _verifier(store, cfg)
    with pytest.raises(InvalidReviewActionError):
        verifier.review_decision("p1", "escalate", {})
    with pytest.raises(InvalidReviewActionError):
        verifier.review_decision("p1", "approve", {"reviewer": "u1"})
    with pytest.raises(InvalidReviewActionError):
        verifier.review_decision("p1", "modify", {"reviewer": "u1"})


def test_reprocess_resets_but_keeps_flags(store, cfg, add_proof):
    add_proof("p1", extraction=_result(10.0, None, 0.1))
    verifier = _verifier(store, cfg)
    assert verifier.process_proof("p1").status == FLAGGED

    assert verifier.reprocess(["p1"], actor="u1") == ["p1"]
    proof = store.get_proof("p1")
    assert proof.verification_status == PENDING
    assert proof.extraction is None
    assert proof.processing_attempts == 0
    assert proof.flagged_reasons == ["low_ai_confidence"]
