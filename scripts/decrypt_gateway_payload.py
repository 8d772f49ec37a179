"""Verify and decrypt a captured BillDesk envelope (e.g. a 422 error body).

Reads the envelope from --file, the first positional argument, or stdin, and
prints the outer header and the decrypted JSON. Secrets default to the
service's BILLDESK_* environment variables.
"""

import argparse
import json
import os
import sys

from bdpay.common.errors import EnvelopeError
from bdpay.common.jose import SENTINEL_KEY_ID, peek_header, verify_and_decrypt


def read_envelope(args: argparse.Namespace) -> str:
    if args.file:
        with open(args.file, encoding="utf-8") as handle:
            return handle.read().strip()
    if args.envelope:
        return args.envelope.strip()
    return sys.stdin.read().strip()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("envelope", nargs="?", help="Compact JWS envelope")
    parser.add_argument("--file", help="Read the envelope from this file")
    parser.add_argument("--key-id", default=os.getenv("BILLDESK_SECURITY_ID", ""))
    parser.add_argument("--encryption-key", default=os.getenv("BILLDESK_ENCRYPTION_PASSWORD", ""))
    parser.add_argument("--signing-key", default=os.getenv("BILLDESK_SIGNING_PASSWORD", ""))
    args = parser.parse_args()

    envelope = read_envelope(args)
    if not envelope:
        print("No envelope given.")
        return 2
    if not (args.key_id and args.encryption_key and args.signing_key):
        print("Key id, encryption key and signing key are required (flags or BILLDESK_* env).")
        return 2

    header = peek_header(envelope)
    print(f"JWS header: {json.dumps(header)}")
    if header.get("kid") == SENTINEL_KEY_ID:
        print(f"Signed under the {SENTINEL_KEY_ID!r} key id (gateway error-response convention).")

    try:
        plaintext = verify_and_decrypt(envelope, args.encryption_key, args.key_id, args.signing_key, args.key_id)
    except EnvelopeError as exc:
        print(f"Could not open envelope: {type(exc).__name__}: {exc}")
        return 1
    try:
        print(json.dumps(json.loads(plaintext), indent=2, sort_keys=True))
    except ValueError:
        print(plaintext)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
