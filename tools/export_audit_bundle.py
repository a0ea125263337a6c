"""Export an auditor bundle from a medaudit database:
- every stored record (signatures and public keys base64)
- the full audit chain with its hashes
- chain proof (entry count, head hash, validity)
- distinct record-signing public keys
- sha256 manifest of the above
Produces: audit_bundle_<epoch>.zip

Usage: python tools/export_audit_bundle.py [db_path] [out_dir]
"""
import hashlib, json, sys, time, zipfile
from pathlib import Path
from medaudit.config import DB_PATH
from medaudit.db import Database
from medaudit.store import open_stores


def _dump(obj) -> bytes:
    return json.dumps(obj, indent=2, sort_keys=True).encode("utf-8")


def export_bundle(db_path: str = DB_PATH, out_dir: str = ".") -> Path:
    db = Database(db_path)
    try:
        records, audit = open_stores(db)
        record_rows = [r.model_dump(mode="json") for r in records.list()]
        files = {
            "records.json": _dump(record_rows),
            "audit_chain.json": _dump(audit.chain()),
            "proof.json": _dump(audit.proof()),
            "public_keys.json": _dump(sorted({r["public_key"] for r in record_rows})),
        }
    finally:
        db.close()

    files["manifest.json"] = _dump({name: hashlib.sha256(data).hexdigest() for name, data in files.items()})

    out = Path(out_dir) / f"audit_bundle_{int(time.time())}.zip"
    out.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as z:
        for name, data in files.items():
            z.writestr(name, data)
    return out


if __name__ == "__main__":
    db_path = sys.argv[1] if len(sys.argv) > 1 else DB_PATH
    out_dir = sys.argv[2] if len(sys.argv) > 2 else "."
    print(str(export_bundle(db_path, out_dir)))
