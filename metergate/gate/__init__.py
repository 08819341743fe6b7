# metergate/gate/__init__.py
"""
Provider-side payment gate.

Admits HTTP requests only when they carry proof of an on-chain payment and a
signature binding that payment to the request.

Key components:
- signature: canonical base string, ed25519 signing, Authorization header codec
- agent_auth: verifies a request against the registered agent key
- nonce: replay protection (in-memory, file and Redis stores)
- payment: on-chain transfer verification
- facilitator: delegated verification over HTTP
- routing: single- and multi-route pricing tables
- pipeline: the admission state machine composing the checks above
- middleware: Starlette adapter returning 402 on rejection
- audit: JSON-lines audit trail

Configuration is loaded from environment variables via metergate.core.config.
"""

__version__ = "0.1.0"
