#!/usr/bin/env python
"""
Apply a reviewer's decision to one or more payment proofs.

    python scripts/apply_review.py --proof-id p1 --action approve --reviewer u42
    python scripts/apply_review.py --proof-id p1 --proof-id p2 --action reject --reviewer u42 --reason "blurry"
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from payproof.batch_runner import BatchRunner
from payproof.config_loader import load_verification_config
from payproof.errors import PaymentProofError
from payproof.state_store import ProofStore
from payproof.verifier import REVIEW_ACTIONS, ProofVerifier


def apply_review(args) -> int:
    cfg = load_verification_config(args.config)
    store = ProofStore()
    store.init_db()
    verifier = ProofVerifier(store, cfg)

    if args.action == "reprocess":
        reset = verifier.reprocess(args.proof_id, actor=args.reviewer)
        print(f"reset {len(reset)}/{len(args.proof_id)} proofs to pending")
        return 0 if len(reset) == len(args.proof_id) else 1

    if len(args.proof_id) > 1:
        if args.action not in ("approve", "reject"):
            print("only approve/reject can be applied to several proofs at once", file=sys.stderr)
            return 2
        job = BatchRunner(store, verifier, cfg).run_bulk_review(
            args.proof_id, args.action, args.reviewer, notes=args.notes, rejection_reason=args.reason
        )
        print(f"{job.action}: {job.status} ok={job.successful_proofs} failed={job.failed_proofs}")
        return 0 if job.failed_proofs == 0 else 1

    details = {
        "reviewer": args.reviewer,
        "notes": args.notes,
        "rejection_reason": args.reason,
        "submission_id": args.submission_id,
        "amount": args.amount,
        "reference": args.reference,
        "method": args.method,
    }
    proof_id = args.proof_id[0]
    try:
        result = verifier.review_decision(proof_id, args.action, details)
    except PaymentProofError as e:
        print(f"{proof_id}: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    print(f"{proof_id}: {result.previous_status} -> {result.status}")
    return 0


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Apply a manual review decision")
    parser.add_argument("--proof-id", action="append", required=True)
    parser.add_argument("--action", required=True, choices=REVIEW_ACTIONS + ("reprocess",))
    parser.add_argument("--reviewer", required=True)
    parser.add_argument("--notes")
    parser.add_argument("--reason", help="rejection reason")
    parser.add_argument("--submission-id", help="submission to approve against")
    parser.add_argument("--amount", type=float, help="corrected amount (modify)")
    parser.add_argument("--reference", help="corrected reference (modify)")
    parser.add_argument("--method", help="corrected payment method (modify)")
    parser.add_argument("--config", help="path to verification.yml")
    args = parser.parse_args()

    sys.exit(apply_review(args))
