#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
from datetime import UTC, datetime, timedelta

import jwt


def main() -> int:
    parser = argparse.ArgumentParser(description="Issue an HS256 bearer token for local API calls.")
    parser.add_argument("--sub", required=True, help="subject claim")
    parser.add_argument("--ttl-minutes", type=int, default=60)
    parser.add_argument("--secret", default=os.getenv("JWT_SHARED_SECRET", ""))
    parser.add_argument("--issuer", default=os.getenv("JWT_ISSUER", ""))
    parser.add_argument("--audience", default=os.getenv("JWT_AUDIENCE", ""))
    args = parser.parse_args()

    if not args.secret:
        raise SystemExit("JWT_SHARED_SECRET is required (pass --secret or set env)")
    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "sub": args.sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=max(1, args.ttl_minutes))).timestamp()),
    }
    if args.issuer:
        payload["iss"] = args.issuer
    if args.audience:
        payload["aud"] = args.audience
    print(jwt.encode(payload, args.secret, algorithm="HS256"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
