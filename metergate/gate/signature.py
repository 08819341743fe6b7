# metergate/gate/signature.py
"""
Canonical request signing for metered requests.

A metered request is signed over a fixed four-line base string:

    (request-target): {method} {path}[?query]
    date: {date}
    x-meter-nonce: {nonce}
    x-meter-tx: {txSig}

The method is lowercased, the lines are joined with "\\n", and the signature
is a detached ed25519 signature over the UTF-8 bytes, base64-encoded. The
Authorization header carries the key id, the algorithm, the covered header
list and the signature in HTTP Signature format.
"""
import base64
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from nacl.signing import SigningKey

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "Signature "
SIGNATURE_ALGORITHM = "ed25519"
COVERED_HEADERS = ["(request-target)", "date", "x-meter-nonce", "x-meter-tx"]

# Wire header names
TX_HEADER = "x-meter-tx"
ROUTE_HEADER = "x-meter-route"
AMOUNT_HEADER = "x-meter-amt"
CURRENCY_HEADER = "x-meter-currency"
NONCE_HEADER = "x-meter-nonce"
TIMESTAMP_HEADER = "x-meter-ts"
AGENT_KID_HEADER = "x-meter-agent-kid"
AUTHORIZATION_HEADER = "authorization"
DATE_HEADER = "date"

_PARAM_SEPARATOR = re.compile(r"\s*,\s*")


@dataclass(frozen=True)
class SignatureParams:
    """Parsed Authorization header parameters."""
    key_id: str
    algorithm: str
    headers: List[str]
    signature: str


def build_base_string(method: str, path: str, date: str, nonce: str, tx_sig: str) -> str:
    """
    Build the canonical signature base string.

    Args:
        method: HTTP method (any case)
        path: Request path, including "?query" when the request has one
        date: Value of the Date header
        nonce: Value of the x-meter-nonce header
        tx_sig: Value of the x-meter-tx header

    Returns:
        The four-line base string
    """
    return "\n".join([
        f"(request-target): {method.lower()} {path}",
        f"date: {date}",
        f"x-meter-nonce: {nonce}",
        f"x-meter-tx: {tx_sig}",
    ])


def load_signing_key(private_key: Union[bytes, SigningKey]) -> SigningKey:
    """
    Accept a 32-byte seed, a 64-byte seed+public secret key, or a SigningKey.
    """
    if isinstance(private_key, SigningKey):
        return private_key
    raw = bytes(private_key)
    if len(raw) == 64:
        raw = raw[:32]
    if len(raw) != 32:
        raise ValueError(f"ed25519 private key must be 32 or 64 bytes, got {len(raw)}")
    return SigningKey(raw)


def sign_base_string(private_key: Union[bytes, SigningKey], base_string: str) -> str:
    """Sign the base string and return the base64-encoded detached signature."""
    signing_key = load_signing_key(private_key)
    signed = signing_key.sign(base_string.encode("utf-8"))
    return base64.b64encode(signed.signature).decode("ascii")


def create_authorization_header(key_id: str, signature: str) -> str:
    """Format the Authorization header value for a signed request."""
    return (
        f'Signature keyId="{key_id}", alg="{SIGNATURE_ALGORITHM}", '
        f'headers="{" ".join(COVERED_HEADERS)}", signature="{signature}"'
    )


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_authorization_header(value: Optional[str]) -> Optional[SignatureParams]:
    """
    Parse a Signature Authorization header.

    Whitespace around "," separators is ignored and matching quote characters
    are stripped from values. Returns None when the header is not a Signature
    header or any of keyId/alg/headers/signature is missing.
    """
    if not value or not value.startswith(SIGNATURE_SCHEME):
        return None

    params: Dict[str, str] = {}
    for item in _PARAM_SEPARATOR.split(value[len(SIGNATURE_SCHEME):].strip()):
        name, sep, raw = item.partition("=")
        if not sep:
            continue
        params[name.strip()] = _strip_quotes(raw.strip())

    key_id = params.get("keyId")
    algorithm = params.get("alg")
    headers = params.get("headers")
    signature = params.get("signature")
    if not key_id or not algorithm or not headers or not signature:
        logger.debug("Authorization header is missing a required parameter")
        return None

    return SignatureParams(
        key_id=key_id,
        algorithm=algorithm,
        headers=headers.split(" "),
        signature=signature,
    )
