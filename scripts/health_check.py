#!/usr/bin/env python
"""Simple health check utility.

Prints whether the configuration and secrets the settlement workers read
are present in the environment (values are never printed), followed by
the effective mode.  Operators can run it before starting the workers.
"""

from __future__ import annotations

import os


def main() -> None:
    # List of important environment variables to report
    keys = [
        "DRY_RUN",
        "STATE_STORE_URI",
        "RABBITMQ_HOST",
        "REDIS_HOST",
        "EVENT_STORE_PATH",
        "SECRETS_BACKEND",
        "TRONGRID_API_KEY",
        "ETHERSCAN_API_KEY",
        "BSCSCAN_API_KEY",
        "NOWPAYMENTS_API_KEY",
        "LEDGER_URL",
        "LEDGER_TOKEN",
        "CUSTODIAN_URL",
        "CUSTODIAN_API_KEY",
        "CUSTODIAN_API_SECRET",
        "IDENTITY_URL",
    ]
    print("Health Check:")
    for key in keys:
        val = os.environ.get(key) or os.environ.get(f"{key}_FILE")
        status = "set" if val else "missing"
        print(f"{key}: {status}")
    dry_run = os.environ.get("DRY_RUN", "true").strip().lower() in ("1", "true", "yes", "on")
    print(f"mode: {'dry-run (paper ledger and custodian)' if dry_run else 'live'}")


if __name__ == "__main__":
    main()
