import re
from typing import List, Optional

from rapidfuzz.distance import Levenshtein

from .config_loader import VerificationConfig
from .models import ExtractedPayment, MatchScore, RankedMatch, Submission


# Spellings the extraction model is known to emit for the same wallet/bank.
METHOD_ALIASES = {
    "paymaya": "maya",
    "touchngo": "tng",
    "touchngoewallet": "tng",
    "tngewallet": "tng",
    "grabpayph": "grabpay",
    "grabpaymy": "grabpay",
    "shopeepayph": "shopeepay",
    "shopeepaymy": "shopeepay",
    "maybank": "maybank2u",
    "bankofthephilippineislands": "bpi",
    "bancodeoro": "bdo",
}


def _normalize_reference(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", "", text).upper()


def normalize_method(text: Optional[str]) -> str:
    if not text:
        return ""
    s = re.sub(r"[^a-z0-9]", "", text.lower())
    return METHOD_ALIASES.get(s, s)


def amount_delta(candidate: ExtractedPayment, submission: Submission) -> Optional[float]:
    if candidate.amount is None:
        return None
    return round(abs(candidate.amount - submission.total_amount), 2)


def _amount_term(delta: Optional[float], submission: Submission, cfg: VerificationConfig) -> float:
    if delta is None:
        return 0.0
    tol = cfg.amount_tolerance
    if delta <= tol:
        return 1.0
    max_dev = abs(submission.total_amount) * cfg.max_deviation_pct / 100.0
    if max_dev <= tol:
        return 0.0
    return max(0.0, 1.0 - (delta - tol) / (max_dev - tol))


def _reference_term(extracted: Optional[str], expected: Optional[str]) -> float:
    a = _normalize_reference(extracted)
    b = _normalize_reference(expected)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.6
    return Levenshtein.normalized_similarity(a, b)


def _method_term(extracted: Optional[str], expected: Optional[str]) -> float:
    a = normalize_method(extracted)
    b = normalize_method(expected)
    if not a or not b:
        return 0.5
    return 1.0 if a == b else 0.0


def score_match(candidate: ExtractedPayment, submission: Submission, cfg: VerificationConfig) -> MatchScore:
    reasons: List[str] = []
    w = cfg.weights

    # amount
    delta = amount_delta(candidate, submission)
    amount_score = _amount_term(delta, submission, cfg)
    if delta is None:
        reasons.append("amount_missing")
    elif amount_score == 1.0:
        reasons.append("amount≈")
    elif amount_score > 0:
        reasons.append(f"amount_diff={delta:.2f}")
    else:
        reasons.append(f"amount_diff={delta:.2f}(out_of_range)")

    # reference
    ref_score = _reference_term(candidate.reference, submission.payment_reference)
    if ref_score == 1.0:
        reasons.append("reference=")
    elif ref_score == 0.6:
        reasons.append("reference⊂")
    elif ref_score > 0:
        reasons.append(f"reference~{ref_score:.2f}")

    # method
    method_score = _method_term(candidate.method, submission.payment_method)
    if method_score == 1.0:
        reasons.append("method=")
    elif method_score == 0.0:
        reasons.append("method_mismatch")

    confidence = max(0.0, min(1.0, candidate.confidence))
    reasons.append(f"confidence={confidence:.2f}")

    total = (
        amount_score * w.amount
        + ref_score * w.reference
        + method_score * w.method
        + confidence * w.confidence
    )
    return MatchScore(value=round(max(0.0, min(1.0, total)), 6), reasons=reasons)


def rank_candidates(
    candidates: List[ExtractedPayment], pool: List[Submission], cfg: VerificationConfig
) -> List[RankedMatch]:
    """Score every (candidate, submission) pair, best first.

    Ties go to the oldest submission so the longest-waiting order is paid first.
    """
    ranked: List[RankedMatch] = []
    for candidate in candidates:
        for submission in pool:
            ranked.append(
                RankedMatch(
                    candidate=candidate,
                    submission=submission,
                    score=score_match(candidate, submission, cfg),
                    amount_delta=amount_delta(candidate, submission),
                )
            )
    ranked.sort(key=lambda m: (-m.score.value, m.submission.created_at or "", m.submission.id))
    return ranked


def select_best(
    candidates: List[ExtractedPayment], pool: List[Submission], cfg: VerificationConfig
) -> Optional[RankedMatch]:
    ranked = rank_candidates(candidates, pool, cfg)
    return ranked[0] if ranked else None
