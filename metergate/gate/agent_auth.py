# metergate/gate/agent_auth.py
"""
Agent signature verification.

Authenticates a metered request against the agent key registered for the
key id it claims. Every check fails closed: a malformed header, an unknown or
expired key, an undecodable public key or a bad signature all yield False.
Only registry faults propagate.
"""
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Union

import base58
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey
from starlette.requests import Request

from metergate.core.config import settings
from metergate.gate.signature import (
    AUTHORIZATION_HEADER,
    COVERED_HEADERS,
    DATE_HEADER,
    NONCE_HEADER,
    SIGNATURE_ALGORITHM,
    SIGNATURE_SCHEME,
    TX_HEADER,
    build_base_string,
    parse_authorization_header,
)
from metergate.services.collaborators import AgentKeyRegistry

logger = logging.getLogger(__name__)

ED25519_PUBLIC_KEY_LENGTH = 32


@dataclass(frozen=True)
class SignedRequest:
    """
    The live request fields a signature is checked against.

    Headers are looked up case-insensitively.
    """
    method: str
    path: str
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        if value is not None:
            return value
        lowered = name.lower()
        for key, candidate in self.headers.items():
            if key.lower() == lowered:
                return candidate
        return None

    @property
    def request_target(self) -> str:
        """Path plus query, as it appears in the (request-target) line."""
        target = self.path or "/"
        return f"{target}?{self.query}" if self.query else target

    @classmethod
    def from_request(cls, request: Request) -> "SignedRequest":
        """
        Capture method, raw path, raw query string and headers from Starlette.

        The raw path is used so percent-encoding survives exactly as the client
        sent it; servers that do not provide raw_path fall back to the decoded
        path.
        """
        raw_path = request.scope.get("raw_path")
        if raw_path:
            path = raw_path.split(b"?", 1)[0].decode("latin-1")
        else:
            path = request.url.path
        query = request.scope.get("query_string", b"").decode("latin-1")
        return cls(
            method=request.method,
            path=path,
            query=query,
            headers=request.headers,
        )


@dataclass(frozen=True)
class Base64Key:
    raw: bytes


@dataclass(frozen=True)
class Base58Key:
    raw: bytes


@dataclass(frozen=True)
class DecodeError:
    reason: str


DecodedKey = Union[Base64Key, Base58Key, DecodeError]


def _decode_base64(text: str) -> Optional[bytes]:
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) == ED25519_PUBLIC_KEY_LENGTH else None


def _decode_base58(text: str) -> Optional[bytes]:
    try:
        decoded = base58.b58decode(text)
    except ValueError:
        return None
    return decoded if len(decoded) == ED25519_PUBLIC_KEY_LENGTH else None


def decode_public_key(public_key: str) -> DecodedKey:
    """
    Decode a registered public key: base64 first, then base58.

    Returns:
        Base64Key or Base58Key holding 32 raw bytes, or DecodeError
    """
    text = (public_key or "").strip()
    if not text:
        return DecodeError("empty public key")

    raw = _decode_base64(text)
    if raw is not None:
        return Base64Key(raw)

    raw = _decode_base58(text)
    if raw is not None:
        return Base58Key(raw)

    return DecodeError("expected base64 or base58 encoded 32-byte ed25519 public key")


def reconstruct_base_string(request: SignedRequest) -> str:
    """Rebuild the base string from the live request's own fields."""
    return build_base_string(
        request.method,
        request.request_target,
        request.header(DATE_HEADER) or "",
        request.header(NONCE_HEADER) or "",
        request.header(TX_HEADER) or "",
    )


def _trace(message: str) -> None:
    if settings.METER_DEBUG_SIGNATURES:
        logger.debug(f"signature check: {message}")


async def verify_agent_signature(
    request: Union[SignedRequest, Request],
    agent_key_id: str,
    registry: AgentKeyRegistry,
) -> bool:
    """
    Verify that the request was signed by the registered key for agent_key_id.

    Args:
        request: SignedRequest or Starlette Request
        agent_key_id: Key id claimed by the x-meter-agent-kid header
        registry: Agent key registry

    Returns:
        True only when every check passes

    Raises:
        Whatever the registry raises when it cannot be reached
    """
    if isinstance(request, Request):
        request = SignedRequest.from_request(request)

    auth_header = request.header(AUTHORIZATION_HEADER)
    if not auth_header or not auth_header.startswith(SIGNATURE_SCHEME):
        _trace("no Signature authorization header")
        return False

    params = parse_authorization_header(auth_header)
    if params is None:
        _trace("authorization header did not parse")
        return False

    if params.key_id != agent_key_id:
        _trace(f"keyId mismatch: expected {agent_key_id!r}, got {params.key_id!r}")
        return False

    if params.algorithm != SIGNATURE_ALGORITHM:
        _trace(f"unsupported algorithm {params.algorithm!r}")
        return False

    if params.headers != COVERED_HEADERS:
        _trace(f"covered headers mismatch: {params.headers}")
        return False

    credential = await registry.lookup(agent_key_id)
    if credential is None:
        _trace(f"no registered key for {agent_key_id!r}")
        return False

    if credential.is_expired(int(time.time() * 1000)):
        _trace(f"key {agent_key_id!r} expired at {credential.expires_at}")
        return False

    if credential.algorithm != SIGNATURE_ALGORITHM:
        _trace(f"key {agent_key_id!r} is registered for {credential.algorithm!r}")
        return False

    decoded = decode_public_key(credential.public_key)
    if isinstance(decoded, DecodeError):
        _trace(f"public key for {agent_key_id!r} rejected: {decoded.reason}")
        return False

    base_string = reconstruct_base_string(request)
    _trace("base string:\n" + base_string)

    try:
        signature = base64.b64decode(params.signature, validate=True)
        VerifyKey(decoded.raw).verify(base_string.encode("utf-8"), signature)
    except BadSignatureError:
        _trace("signature does not verify")
        return False
    except (binascii.Error, ValueError, TypeError, CryptoError) as e:
        _trace(f"signature could not be checked: {e}")
        return False

    return True
