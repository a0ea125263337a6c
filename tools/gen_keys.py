"""Generate the local Ed25519 record-signing key used by the local signing oracle.

Usage: python tools/gen_keys.py [output_path] [key_name]
"""
import json, os, sys
from nacl.signing import SigningKey
from medaudit.config import SIGNING_KEY_NAME, SIGNING_KEY_PATH
from medaudit.util import b64e


def generate(path: str = SIGNING_KEY_PATH, key_name: str = SIGNING_KEY_NAME) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    sk = SigningKey.generate()
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"kid": key_name, "private_key_b64": b64e(bytes(sk))}, f, indent=2)
    os.chmod(path, 0o600)
    return b64e(bytes(sk.verify_key))


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else SIGNING_KEY_PATH
    name = sys.argv[2] if len(sys.argv) > 2 else SIGNING_KEY_NAME
    pub = generate(path, name)
    print(f"Generated signing key {name} at {path}; public key {pub}")
