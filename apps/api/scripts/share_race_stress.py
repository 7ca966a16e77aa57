#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import platform
import sys
from dataclasses import fields
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Race concurrent shares and unshares against one store.")
    parser.add_argument("--output", type=Path, default=None, help="write the full JSON report here")
    for name, default in (
        ("race-iterations", 4),
        ("race-parallelism", 8),
        ("race-attempts", 24),
        ("churn-iterations", 3),
        ("churn-parallelism", 6),
        ("churn-targets", 4),
        ("churn-attempts", 60),
    ):
        parser.add_argument(f"--{name}", type=int, default=default)
    parser.add_argument("--seed", type=int, default=7)
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    try:
        from taskshare_api.concurrency_stress import ShareRaceConfig, run_share_race_suite
    except ModuleNotFoundError as exc:
        print(f"[share-race] missing dependency: {exc.name}; run `pip install -e .` first", file=sys.stderr)
        return 2

    values = {item.name: getattr(args, item.name) for item in fields(ShareRaceConfig)}
    if min(value for name, value in values.items() if name != "seed") < 1:
        print("[share-race] counts must be >= 1", file=sys.stderr)
        return 2

    report = run_share_race_suite(ShareRaceConfig(**values))
    report["python"] = platform.python_version()

    for scenario in report["scenarios"]:
        print(f"[share-race] {scenario['name']}: {scenario['status']}")
        for invariant in scenario["invariants"]:
            marker = "ok  " if invariant["passed"] else "FAIL"
            print(f"  {marker} {invariant['id']}")
            for failure in invariant["actual_failures"]:
                print(f"       iteration {failure['iteration']}: {failure['actual']}")

    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        print(f"[share-race] report: {args.output}")

    summary = report["summary"]
    print(f"[share-race] {summary['invariants_passed']}/{summary['invariants_total']} invariants passed")
    return 0 if summary["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
