"""HMAC signature verification for inbound webhooks.

Providers sign the raw request body in one of a few shapes: hex HMAC-SHA256
in a named header, the same with a scheme prefix (``sha256=``), or a base64
HMAC-SHA1. Header name and encoding are part of each provider's contract;
this module only supplies the comparison.

Verification fails closed: a missing header, a missing prefix or an
undecodable value is a rejection, never a skip.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Literal

from starlette.responses import JSONResponse, Response

Encoding = Literal["hex", "base64"]


def compute_signature(secret: str, body: bytes, algorithm: str = "sha256", encoding: Encoding = "hex") -> str:
    """Sign ``body`` with ``secret`` the way a provider would."""
    mac = hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm))
    if encoding == "base64":
        return base64.b64encode(mac.digest()).decode("ascii")
    return mac.hexdigest()


def constant_time_equals(expected: bytes, provided: bytes) -> bool:
    """Compare two byte strings without leaking contents or length.

    Both sides are hashed to a fixed width first so differing lengths take
    the same path as differing bytes.
    """
    return hmac.compare_digest(
        hashlib.sha256(expected).digest(),
        hashlib.sha256(provided).digest(),
    )


def verify_hmac_signature(
    secret: str,
    body: bytes,
    provided: str | None,
    *,
    algorithm: str = "sha256",
    encoding: Encoding = "hex",
    prefix: str = "",
) -> bool:
    """Verify a provider signature header value against the raw body.

    Args:
        secret: Shared webhook signing secret.
        body: Raw request body, exactly as received.
        provided: Header value, or None when the header is absent.
        algorithm: hashlib algorithm name (``sha256``, ``sha1``).
        encoding: How the provider encodes the digest.
        prefix: Required scheme prefix such as ``sha256=``.
    """
    if not provided or not secret:
        return False

    value = provided.strip()
    if prefix:
        if not value.startswith(prefix):
            return False
        value = value[len(prefix):]

    try:
        if encoding == "base64":
            provided_digest = base64.b64decode(value, validate=True)
        else:
            provided_digest = bytes.fromhex(value)
    except ValueError:
        return False

    expected_digest = hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm)).digest()
    return constant_time_equals(expected_digest, provided_digest)


def unauthorized_response(detail: str = "Invalid signature") -> Response:
    """Standard 401 returned when verification fails."""
    return JSONResponse({"error": detail}, status_code=401)
