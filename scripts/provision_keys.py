#!/usr/bin/env python3
"""Provision configured public keys into the ``public_keys`` table.

Does the same as the API's startup hook, for deployments that prefer to
seed keys out-of-band.

Usage::

    # validate the file and show what would be added
    python scripts/provision_keys.py keys.json --dry-run

    # real run (file defaults to $KEY_PROVISION_FILE)
    python scripts/provision_keys.py

Requirements:
    • `SUPABASE_URL`, `SUPABASE_KEY` env vars for service-role access.
    • `SERVER_BASE_URI` / `KEY_BASE_PATH` matching the API, so generated ids
      resolve to the same routes.

Every key is validated and added as the internal server actor.  Keys that
already exist (same id, or same owner and material) are skipped, so the
script is safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import pathlib
import sys

# Ensure project root is on PYTHONPATH so `import keyhub.*` works when the
# script is executed directly (e.g. `python scripts/provision_keys.py`).
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from keyhub.errors import KeyValidationError  # noqa: E402
from keyhub.models import PrivateKey, PublicKey  # noqa: E402
from keyhub.settings import load_key_config, load_provisioned_keys  # noqa: E402
from keyhub.utils.dependencies import build_key_service, create_supabase_client  # noqa: E402
from keyhub.utils.key_validation import check_key_pair  # noqa: E402
from keyhub.utils.logger import configure_logging  # noqa: E402


def _dry_run(entries: list[dict]) -> int:
    failures = 0
    for i, entry in enumerate(entries):
        public_key = PublicKey.model_validate(entry["public_key"])
        raw_private = entry.get("private_key")
        private_key = PrivateKey.model_validate(raw_private) if raw_private else None
        try:
            check_key_pair(public_key, private_key)
        except KeyValidationError as exc:
            failures += 1
            print(f"[dry-run] entry {i}: {exc}")
            continue
        print(
            f"[dry-run] entry {i}: would add {public_key.algorithm.value} key "
            f"for {public_key.owner} id={public_key.id or '<generated>'}"
        )
    return failures


async def _provision(path: str) -> int:
    config = load_key_config()
    entries = load_provisioned_keys(path)
    supabase = await create_supabase_client()
    # provisioning never warms the cache
    service = build_key_service(supabase, config)
    return await service.provision_keys(entries)


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision public keys from a JSON file")
    parser.add_argument(
        "file",
        nargs="?",
        default=os.getenv("KEY_PROVISION_FILE"),
        help="JSON list of {public_key, private_key?} entries (default: $KEY_PROVISION_FILE)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate only; no writes")
    args = parser.parse_args()

    if not args.file:
        parser.error("no key file given and KEY_PROVISION_FILE is unset")

    configure_logging()

    if args.dry_run:
        failures = _dry_run(load_provisioned_keys(args.file))
        sys.exit(1 if failures else 0)

    inserted = asyncio.run(_provision(args.file))
    print(f"Provisioned {inserted} key(s)")


if __name__ == "__main__":
    main()
