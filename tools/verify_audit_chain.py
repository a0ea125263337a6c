"""Verify the hash-chain integrity of an audit chain exported by tools/export_audit_bundle.py."""
import json, sys
from medaudit.store import verify_chain_rows


def main(path):
    with open(path, "r", encoding="utf-8") as f:
        rows = json.load(f)
    ok, broken_at = verify_chain_rows(rows)
    if not ok:
        print("FAIL: chain mismatch at audit entry", broken_at)
        sys.exit(1)
    print(f"PASS: audit chain valid ({len(rows)} entries)")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_audit_chain.py <audit_chain.json>")
        raise SystemExit(2)
    main(sys.argv[1])
