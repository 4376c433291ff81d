#!/usr/bin/env python
"""
Run the background verification sweeps once.

Intended for cron / CI schedules:
    python scripts/run_sweeps.py --sweep all
"""

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from payproof.batch_runner import BatchRunner
from payproof.config_loader import load_verification_config
from payproof.errors import ConfigError
from payproof.extraction_client import ExtractionClient
from payproof.state_store import ProofStore
from payproof.verifier import ProofVerifier

SWEEPS = ("retry", "auto_verify", "flag")


def run(sweeps, config_path=None, seller_id=None) -> int:
    cfg = load_verification_config(config_path)
    store = ProofStore()
    store.init_db()
    verifier = ProofVerifier(store, cfg, ExtractionClient(cfg.extraction))
    runner = BatchRunner(store, verifier, cfg)

    failed = 0
    for name in sweeps:
        if name == "retry":
            job = runner.run_retry_sweep()
        elif name == "auto_verify":
            job = runner.run_auto_verify_sweep()
        else:
            job = runner.run_flag_sweep()
        print(f"{job.action}: {job.status} total={job.total_proofs} "
              f"ok={job.successful_proofs} failed={job.failed_proofs}")
        if job.error_message:
            print(f"  error: {job.error_message}")
        failed += job.failed_proofs + (1 if job.status == "failed" else 0)

    if seller_id:
        print(json.dumps(store.queue_stats(seller_id), ensure_ascii=False, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Run payment proof verification sweeps")
    parser.add_argument("--sweep", choices=SWEEPS + ("all",), default="all")
    parser.add_argument("--config", help="path to verification.yml")
    parser.add_argument("--stats", metavar="SELLER_ID", help="print queue statistics for a seller afterwards")
    args = parser.parse_args()

    selected = SWEEPS if args.sweep == "all" else (args.sweep,)
    try:
        sys.exit(run(selected, args.config, args.stats))
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        sys.exit(2)
