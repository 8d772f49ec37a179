"""Compact JWS(HS256) over JWE(dir, A256GCM) envelopes exchanged with BillDesk.

Outbound: the JSON request is encrypted into a compact JWE, and that JWE string
becomes the payload of a compact JWS. Inbound is the reverse, and the HMAC tag
is always checked before anything is decrypted.

The content-encryption key is SHA-256 of the shared encryption secret, so both
sides derive the same 32 bytes. The outer JWS is signed and checked by PyJWT
with the signing secret as the HMAC key; the JWE is built directly on AES-GCM.

BillDesk signs some error responses with the fixed key id ``"HMAC"`` instead of
the merchant's security id, while the inner JWE still carries the real id.
`verify` therefore resolves the header key id against the real id first and the
sentinel second, and logs when the sentinel was the one that matched.
"""

import base64
import hashlib
import json
import secrets

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jwt.exceptions import InvalidSignatureError, PyJWTError

from bdpay.common.errors import DecryptionFailed, SignatureInvalid
from bdpay.common.logging import logger


SENTINEL_KEY_ID = "HMAC"
JWS_ALG = "HS256"
JWE_ALG = "dir"
JWE_ENC = "A256GCM"
IV_BYTES = 12
TAG_BYTES = 16


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _encode_header(header: dict) -> str:
    return b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))


def _decode_header(segment: str) -> dict:
    header = json.loads(b64url_decode(segment).decode("utf-8"))
    if not isinstance(header, dict):
        raise ValueError("protected header is not a JSON object")
    return header


def derive_content_key(secret: str) -> bytes:
    """32-byte AES key from the shared encryption secret."""

    return hashlib.sha256(secret.encode("utf-8")).digest()


def peek_header(token: str) -> dict:
    """Decode the outer protected header without verifying anything.

    Diagnostics only; never trust the result.
    """

    try:
        return _decode_header(token.strip().split(".")[0])
    except ValueError:
        return {}


def encrypt(plaintext: str, client_id: str, enc_key: str, enc_key_id: str) -> str:
    header = {"alg": JWE_ALG, "enc": JWE_ENC, "kid": enc_key_id, "clientid": client_id}
    protected = _encode_header(header)
    iv = secrets.token_bytes(IV_BYTES)
    sealed = AESGCM(derive_content_key(enc_key)).encrypt(
        iv, plaintext.encode("utf-8"), protected.encode("ascii")
    )
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    # Direct encryption: the encrypted-key segment stays empty.
    return ".".join([protected, "", b64url_encode(iv), b64url_encode(ciphertext), b64url_encode(tag)])


def decrypt(token: str, enc_key: str, enc_key_id: str) -> str:
    parts = token.strip().split(".")
    if len(parts) != 5:
        raise DecryptionFailed(f"expected 5 JWE segments, got {len(parts)}")
    protected, encrypted_key, iv_b64, ciphertext_b64, tag_b64 = parts
    try:
        header = _decode_header(protected)
    except ValueError as exc:
        raise DecryptionFailed(f"unreadable JWE header: {exc}") from exc
    if header.get("alg") != JWE_ALG or header.get("enc") != JWE_ENC:
        raise DecryptionFailed(f"unsupported JWE algorithm {header.get('alg')}/{header.get('enc')}")
    if header.get("kid") not in (None, enc_key_id):
        raise DecryptionFailed(f"unexpected JWE key id {header.get('kid')!r}")
    if encrypted_key:
        raise DecryptionFailed("direct encryption must not carry an encrypted key")
    try:
        iv = b64url_decode(iv_b64)
        sealed = b64url_decode(ciphertext_b64) + b64url_decode(tag_b64)
        plaintext = AESGCM(derive_content_key(enc_key)).decrypt(iv, sealed, protected.encode("ascii"))
        return plaintext.decode("utf-8")
    except InvalidTag as exc:
        raise DecryptionFailed("authentication tag check failed") from exc
    except ValueError as exc:
        raise DecryptionFailed(f"malformed JWE: {exc}") from exc


def sign(payload: str, client_id: str, sign_key: str, sign_key_id: str) -> str:
    return jwt.api_jws.encode(
        payload.encode("utf-8"),
        sign_key,
        algorithm=JWS_ALG,
        headers={"typ": None, "kid": sign_key_id, "clientid": client_id},
    )


def _resolve_signing_key_id(header_kid: str | None, sign_key_id: str) -> str:
    """Pick the key id the token was signed under, real id first, sentinel second."""

    for candidate in (sign_key_id, SENTINEL_KEY_ID):
        if header_kid is None or header_kid == candidate:
            return candidate
    raise SignatureInvalid(f"unknown signing key id {header_kid!r}")


def verify(token: str, sign_key: str, sign_key_id: str) -> str:
    """Return the JWS payload, raising `SignatureInvalid` unless the tag matches."""

    token = token.strip()
    if token.count(".") != 2:
        raise SignatureInvalid(f"expected 3 JWS segments, got {token.count('.') + 1}")
    try:
        header = jwt.get_unverified_header(token)
    except PyJWTError as exc:
        raise SignatureInvalid(f"unreadable JWS: {exc}") from exc
    if header.get("alg") != JWS_ALG:
        raise SignatureInvalid(f"unsupported JWS algorithm {header.get('alg')!r}")

    matched_key_id = _resolve_signing_key_id(header.get("kid"), sign_key_id)
    try:
        payload = jwt.api_jws.decode(token, sign_key, algorithms=[JWS_ALG])
    except InvalidSignatureError as exc:
        raise SignatureInvalid("signature mismatch") from exc
    except PyJWTError as exc:
        raise SignatureInvalid(f"unreadable JWS: {exc}") from exc
    if matched_key_id == SENTINEL_KEY_ID:
        logger.warning("jws verified under sentinel key id %s (gateway error-response convention)", SENTINEL_KEY_ID)

    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureInvalid(f"unreadable JWS payload: {exc}") from exc


def encrypt_and_sign(
    plaintext: str,
    client_id: str,
    enc_key: str,
    enc_key_id: str,
    sign_key: str,
    sign_key_id: str,
) -> str:
    """Encrypt `plaintext` into a JWE and wrap it in a signed JWS."""

    return sign(encrypt(plaintext, client_id, enc_key, enc_key_id), client_id, sign_key, sign_key_id)


def verify_and_decrypt(
    envelope: str,
    enc_key: str,
    enc_key_id: str,
    sign_key: str,
    sign_key_id: str,
) -> str:
    """Verify the outer JWS, then decrypt the JWE it carries."""

    return decrypt(verify(envelope, sign_key, sign_key_id), enc_key, enc_key_id)


class EnvelopeCodec:
    """Binds the envelope functions to one merchant's credentials."""

    def __init__(self, client_id: str, key_id: str, encryption_key: str, signing_key: str) -> None:
        self.client_id = client_id
        self.key_id = key_id
        self._encryption_key = encryption_key
        self._signing_key = signing_key

    @classmethod
    def from_settings(cls, billdesk) -> "EnvelopeCodec":
        return cls(
            client_id=billdesk.client_id,
            key_id=billdesk.security_id,
            encryption_key=billdesk.encryption_password,
            signing_key=billdesk.signing_password,
        )

    def seal(self, payload: dict) -> str:
        """Serialize `payload` deterministically, then encrypt and sign it."""

        plaintext = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return encrypt_and_sign(
            plaintext, self.client_id, self._encryption_key, self.key_id, self._signing_key, self.key_id
        )

    def open(self, envelope: str) -> str:
        return verify_and_decrypt(envelope, self._encryption_key, self.key_id, self._signing_key, self.key_id)

    def open_json(self, envelope: str) -> dict:
        """`open` plus JSON decoding; a non-object body is a `DecryptionFailed`."""

        plaintext = self.open(envelope)
        try:
            body = json.loads(plaintext)
        except ValueError as exc:
            raise DecryptionFailed(f"decrypted payload is not JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise DecryptionFailed("decrypted payload is not a JSON object")
        return body
