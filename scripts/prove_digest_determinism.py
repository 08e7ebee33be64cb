#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path

from sparse_core.config import load_config
from sparse_core.core.accumulator import VARIANTS
from sparse_core.logging_utils import configure_logging
from sparse_core.replay import BatchFormatError, BatchValidator, digests_are_stable, load_batches, replay


def main() -> int:
    parser = argparse.ArgumentParser(description="Prove deterministic batch digests from a JSONL batch log")
    parser.add_argument("batch_log", type=Path, help="JSONL batch log, one batch per line")
    parser.add_argument("--config", default="configs/default.yaml")
    parser.add_argument("--runs", type=int, default=None)
    parser.add_argument("--variant", choices=sorted(VARIANTS), default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.logging)
    runs = args.runs if args.runs is not None else config.replay.runs
    if runs < 1:
        parser.error(f"--runs must be at least 1, got {runs}")
    variant = VARIANTS[args.variant or config.accumulator.variant]

    try:
        batches = load_batches(args.batch_log, BatchValidator(config.replay.schema_path))
    except BatchFormatError as err:
        print(f"invalid batch log: {err}")
        return 2

    if not digests_are_stable(variant, batches, runs):
        print("non-deterministic digests detected")
        return 1

    accumulator = variant()
    digests = replay(accumulator, batches)
    final = digests[-1].hex() if digests else "-"
    print(
        f"deterministic: runs={runs} variant={variant.variant} batches={len(digests)} "
        f"streams={len(accumulator.store)} final_digest={final}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
