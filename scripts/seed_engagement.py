#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from thesis_validator.security import ROLE_RANKS
from thesis_validator.services import build_services_from_env


def _parse_member(raw: str) -> tuple[str, str]:
    subject, sep, role = raw.partition("=")
    if not sep or role not in ROLE_RANKS or not subject.strip():
        raise argparse.ArgumentTypeError(f"member must look like subject=viewer|editor|owner, got {raw!r}")
    return subject.strip(), role


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an engagement with members and optional hypotheses.")
    parser.add_argument("--name", required=True)
    parser.add_argument("--owner", required=True, help="subject that receives the owner role")
    parser.add_argument("--thesis", default=None)
    parser.add_argument("--engagement-id", default=None)
    parser.add_argument("--member", action="append", type=_parse_member, default=[], help="subject=role")
    parser.add_argument("--hypothesis", action="append", default=[], help="hypothesis statement; repeatable")
    args = parser.parse_args()

    services = build_services_from_env()
    engagement = services.seed_engagement(
        name=args.name,
        owner=args.owner,
        thesis=args.thesis,
        engagement_id=args.engagement_id,
        members=dict(args.member),
    )
    hypotheses = [
        services.seed_hypothesis(engagement_id=engagement["id"], statement=statement)
        for statement in args.hypothesis
    ]
    print(
        json.dumps(
            {"engagement": engagement, "hypotheses": hypotheses, "members": dict(args.member)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
