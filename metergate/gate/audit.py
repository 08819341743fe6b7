# metergate/gate/audit.py
"""
Audit trail for metered requests.

Every admission decision can be written to a JSON-lines log for dispute
resolution and reconciliation of payments against served requests.

Log format: JSON lines (one event per line)
Log location: METER_AUDIT_LOG_PATH
Enabled by: METER_AUDIT_ENABLED

Events logged:
- Request received (client IP, method, path, claimed route)
- 402 returned (route, price, reason)
- Payment verified (transaction signature, route, amount, verifier)
- Request admitted / rejected (final pipeline state and reason)
- Error (type, context)

Write failures are logged and swallowed; auditing never blocks a request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from metergate.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    REQUEST_ADMITTED = "request_admitted"
    REQUEST_REJECTED = "request_rejected"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short id correlating the events of one request."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.METER_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    agent_key_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        agent_key_id: Agent key id claimed by the request (if available)
        request_id: Request correlation id (generated when omitted)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "agent_key_id": agent_key_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    agent_key_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None when auditing is disabled
        or the write failed
    """
    if not settings.METER_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        agent_key_id=agent_key_id,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


def log_request_received(
    client_ip: str,
    method: str,
    path: str,
    route_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUEST_RECEIVED,
        data={
            "method": method,
            "path": path,
            "route_id": route_id,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_required_sent(
    client_ip: str,
    route_id: str,
    amount: float,
    currency: str,
    reason: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "route_id": route_id,
            "amount": amount,
            "currency": currency,
            "reason": reason,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    agent_key_id: str,
    tx_sig: str,
    route_id: str,
    amount: float,
    verified_by: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a successful payment verification (verified_by: facilitator or ledger)."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "tx_sig": tx_sig,
            "route_id": route_id,
            "amount": amount,
            "verified_by": verified_by,
        },
        client_ip=client_ip,
        agent_key_id=agent_key_id,
        request_id=request_id
    )


def log_request_admitted(
    client_ip: str,
    agent_key_id: str,
    tx_sig: str,
    route_id: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUEST_ADMITTED,
        data={
            "tx_sig": tx_sig,
            "route_id": route_id,
        },
        client_ip=client_ip,
        agent_key_id=agent_key_id,
        request_id=request_id
    )


def log_request_rejected(
    client_ip: str,
    reason: str,
    state: str,
    detail: Optional[str] = None,
    agent_key_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a rejection with the pipeline state it stopped in."""
    return log_audit_event(
        event_type=AuditEventType.REQUEST_REJECTED,
        data={
            "reason": reason,
            "state": state,
            "detail": detail,
        },
        client_ip=client_ip,
        agent_key_id=agent_key_id,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    agent_key_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log, most recent first.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        agent_key_id: Filter by agent key id (optional)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if agent_key_id and event.get("agent_key_id") != agent_key_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Summarize the audit log.

    Returns:
        Dict with total events, counts per event type, rejection counts per
        reason, and the first/last event timestamps
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "rejections_by_reason": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue

                stats["total_events"] += 1
                kind = event.get("event_type", "unknown")
                stats["events_by_type"][kind] = stats["events_by_type"].get(kind, 0) + 1

                if kind == AuditEventType.REQUEST_REJECTED.value:
                    reason = (event.get("data") or {}).get("reason", "unknown")
                    stats["rejections_by_reason"][reason] = stats["rejections_by_reason"].get(reason, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if stats["first_event"] is None:
                        stats["first_event"] = timestamp
                    stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
