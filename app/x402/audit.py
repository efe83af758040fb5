# app/x402/audit.py
"""
Audit logging for payments, access grants and sponsorships.

This module logs gateway events for:
- Dispute resolution (which signature unlocked which content for whom)
- Financial reconciliation
- Operator review of abuse signals

Log format: JSON lines (one event per line)
Log location: Configured via AUDIT_LOG_PATH
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    SPONSORSHIP_CHECKED = "sponsorship_checked"
    SPONSORSHIP_SUBMITTED = "sponsorship_submitted"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMITED = "rate_limited"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"
    API_KEY_REJECTED = "api_key_rejected"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    A failing audit write is logged but never fails the request it describes.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    buyer: str,
    content_id: str,
    payment_id: str,
    amount: int,
    asset_type: str,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "content_id": content_id,
            "payment_id": payment_id,
            "amount": amount,
            "asset_type": asset_type,
        },
        client_ip=client_ip,
        wallet_address=buyer
    )


def log_payment_verified(
    buyer: str,
    content_id: str,
    payment_id: str,
    signature: str,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a confirmed on-chain payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "content_id": content_id,
            "payment_id": payment_id,
            "signature": signature,
        },
        client_ip=client_ip,
        wallet_address=buyer
    )


def log_payment_failed(
    buyer: str,
    reason: str,
    stage: str,
    signature: Optional[str] = None,
    retryable: bool = False,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a payment failure event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
            "signature": signature,
            "retryable": retryable,
        },
        client_ip=client_ip,
        wallet_address=buyer
    )


def log_access_granted(
    buyer: str,
    content_id: str,
    token_id: str,
    via: str,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log content unlocked for a buyer."""
    return log_audit_event(
        event_type=AuditEventType.ACCESS_GRANTED,
        data={
            "content_id": content_id,
            "token_id": token_id,
            "via": via,
        },
        client_ip=client_ip,
        wallet_address=buyer
    )


def log_access_denied(
    buyer: Optional[str],
    content_id: str,
    reason: str,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a rejected token or failed decryption."""
    return log_audit_event(
        event_type=AuditEventType.ACCESS_DENIED,
        data={
            "content_id": content_id,
            "reason": reason,
        },
        client_ip=client_ip,
        wallet_address=buyer
    )


def log_sponsorship_checked(
    wallet_address: str,
    eligible: bool,
    reason: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a sponsorship eligibility decision."""
    return log_audit_event(
        event_type=AuditEventType.SPONSORSHIP_CHECKED,
        data={
            "eligible": eligible,
            "reason": reason,
        },
        client_ip=client_ip,
        wallet_address=wallet_address
    )


def log_sponsorship_submitted(
    wallet_address: str,
    signature: str,
    amount: int,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a sponsored transaction sent to the ledger."""
    return log_audit_event(
        event_type=AuditEventType.SPONSORSHIP_SUBMITTED,
        data={
            "signature": signature,
            "amount": amount,
        },
        client_ip=client_ip,
        wallet_address=wallet_address
    )


def log_suspicious_activity(
    wallet_address: str,
    patterns: List[str],
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log abuse heuristics that fired (for operator review)."""
    return log_audit_event(
        event_type=AuditEventType.SUSPICIOUS_ACTIVITY,
        data={
            "patterns": patterns,
        },
        client_ip=client_ip,
        wallet_address=wallet_address
    )


def log_rate_limited(
    client_ip: str,
    path: str,
    retry_after: int,
    rate_limit_key: Optional[str] = None
) -> Optional[str]:
    """Log a request rejected by the rate limiter."""
    return log_audit_event(
        event_type=AuditEventType.RATE_LIMITED,
        data={
            "path": path,
            "retry_after": retry_after,
            "rate_limit_key": rate_limit_key or client_ip,
        },
        client_ip=client_ip
    )


def log_api_key_event(
    event_type: AuditEventType,
    creator_id: Optional[str],
    key_id: Optional[str] = None,
    reason: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log creation, revocation or rejection of a creator API key."""
    return log_audit_event(
        event_type=event_type,
        data={
            "creator_id": creator_id,
            "key_id": key_id,
            "reason": reason,
        },
        client_ip=client_ip
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        wallet_address: Filter by wallet (optional)

    Returns:
        List of audit events (most recent first)
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
                if wallet_address and event.get("wallet_address") != wallet_address:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    # Return most recent first, limited to max_entries
    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and date range
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    for event in reversed(read_audit_log(max_entries=10 ** 9)):
        total += 1
        kind = event.get("event_type", "unknown")
        events_by_type[kind] = events_by_type.get(kind, 0) + 1

        timestamp = event.get("timestamp")
        if timestamp:
            if first_timestamp is None:
                first_timestamp = timestamp
            last_timestamp = timestamp

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
