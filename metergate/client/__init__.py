# metergate/client/__init__.py
"""
Agent-side client for paid requests.

Key components:
- orchestrator: PaidRequestClient (price, pay, sign, send, retry on 402)
- price: TTL-cached price quotes
- payment: transfer construction and submission
- errors: typed client errors and classification helpers
"""
