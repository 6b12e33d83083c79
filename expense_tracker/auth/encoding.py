"""
Canonical encoding of passkey binary material.

Browsers and client libraries send credential ids, public keys and response
fields as base64url, plain base64, with or without padding. Everything is
decoded to bytes here, once, and stored as unpadded base64url.
"""
import base64
import binascii
from typing import Any, Dict, Union

from .errors import IncompleteCredential

BinaryLike = Union[str, bytes, bytearray, memoryview]

_RESPONSE_BINARY_FIELDS = (
    "clientDataJSON",
    "attestationObject",
    "authenticatorData",
    "signature",
    "userHandle",
)


def to_bytes(value: BinaryLike) -> bytes:
    """
    Decode base64 or base64url text (padding optional) to bytes.

    Raises:
        ValueError: If the text is not valid base64 in either alphabet.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if not isinstance(value, str):
        raise ValueError(f"Cannot decode {type(value).__name__} as base64")

    text = value.strip().replace("+", "-").replace("/", "_").rstrip("=")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


def to_text(value: bytes) -> str:
    """Encode bytes as unpadded base64url (the stored form)."""
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def canonical(value: BinaryLike) -> str:
    """Re-encode any accepted encoding to the stored form."""
    return to_text(to_bytes(value))


def normalize_credential_package(package: Any) -> Dict:
    """
    Rewrite a WebAuthn credential package into canonical base64url.

    id and rawId must name the same credential; either one may be missing.

    Raises:
        IncompleteCredential: Missing id or response, or undecodable fields.
    """
    if not isinstance(package, dict):
        raise IncompleteCredential("Credential must be an object")

    raw_id = package.get("rawId") or package.get("id")
    response = package.get("response")
    if not raw_id or not isinstance(response, dict):
        raise IncompleteCredential()

    try:
        credential_id = canonical(raw_id)
        if package.get("id") and canonical(package["id"]) != credential_id:
            raise IncompleteCredential("Credential id and rawId do not match")

        normalized_response = dict(response)
        for field in _RESPONSE_BINARY_FIELDS:
            if normalized_response.get(field):
                normalized_response[field] = canonical(normalized_response[field])
    except ValueError as e:
        raise IncompleteCredential(f"Credential is not valid base64: {e}") from e

    normalized = dict(package)
    normalized["id"] = credential_id
    normalized["rawId"] = credential_id
    normalized["type"] = package.get("type") or "public-key"
    normalized["response"] = normalized_response
    return normalized
