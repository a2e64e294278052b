# micropay/oracle/audit.py
"""
Audit logging for swap settlement.

Every state change the oracle makes on a swap is appended here so an operator
can reconstruct what happened to a payment:

- Swap created (content, user, deposit amount)
- Payment observed (provider status)
- Settlement submitted (step, transaction hash)
- Settlement finalized (step, transaction hash)
- Swap confirmed / failed (terminal outcome, reason)
- Error (transient failures, with context)

Log format: JSON lines (one event per line)
Log location: Configured via AUDIT_LOG_PATH

Audit writes never raise: a failure to write is logged and the oracle carries on.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from micropay.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    SWAP_CREATED = "swap_created"
    PAYMENT_OBSERVED = "payment_observed"
    SETTLEMENT_SUBMITTED = "settlement_submitted"
    SETTLEMENT_FINALIZED = "settlement_finalized"
    SWAP_CONFIRMED = "swap_confirmed"
    SWAP_FAILED = "swap_failed"
    ERROR = "error"


def generate_event_id() -> str:
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    swap_id: Optional[str],
    data: Dict[str, Any]
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_id": generate_event_id(),
        "event_type": event_type.value,
        "swap_id": swap_id,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    swap_id: Optional[str],
    data: Dict[str, Any]
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The event id, or None if the event could not be written
    """
    event = create_audit_event(event_type, swap_id, data)

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{swap_id}]")
        return event["event_id"]

    except Exception as e:
        logger.error(f"Failed to write audit event {event_type.value} for swap {swap_id}: {e}")
        return None


# Convenience functions for specific event types

def log_swap_created(swap_id: str, user_address: str, content_id: str, amount: str) -> Optional[str]:
    return log_audit_event(
        AuditEventType.SWAP_CREATED,
        swap_id,
        {"user_address": user_address, "content_id": content_id, "deposit_amount": amount},
    )


def log_payment_observed(swap_id: str, payment_status: str) -> Optional[str]:
    return log_audit_event(AuditEventType.PAYMENT_OBSERVED, swap_id, {"payment_status": payment_status})


def log_settlement_submitted(swap_id: str, step: str, tx_hash: str) -> Optional[str]:
    return log_audit_event(AuditEventType.SETTLEMENT_SUBMITTED, swap_id, {"step": step, "tx_hash": tx_hash})


def log_settlement_finalized(swap_id: str, step: str, tx_hash: str) -> Optional[str]:
    return log_audit_event(AuditEventType.SETTLEMENT_FINALIZED, swap_id, {"step": step, "tx_hash": tx_hash})


def log_swap_confirmed(swap_id: str, tx_hash: Optional[str]) -> Optional[str]:
    return log_audit_event(AuditEventType.SWAP_CONFIRMED, swap_id, {"tx_hash": tx_hash})


def log_swap_failed(swap_id: str, reason: str, stage: Optional[str] = None) -> Optional[str]:
    return log_audit_event(AuditEventType.SWAP_FAILED, swap_id, {"reason": reason, "stage": stage})


def log_error(
    swap_id: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ERROR,
        swap_id,
        {
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    swap_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        swap_id: Filter by swap id (optional)

    Returns:
        List of audit events (most recent first)
    """
    try:
        log_path = get_audit_log_path()
        if not log_path.exists():
            return []

        events = []
        with open(log_path, "r", encoding="utf-8") as f:
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
                if swap_id and event.get("swap_id") != swap_id:
                    continue
                events.append(event)

        return list(reversed(events))[:max_entries]

    except Exception as e:
        logger.error(f"Failed to read audit log: {e}")
        return []


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with total events, counts per type and first/last timestamps
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        with open(log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                stats["total_events"] += 1
                event_type = event.get("event_type", "unknown")
                stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if stats["first_event"] is None:
                        stats["first_event"] = timestamp
                    stats["last_event"] = timestamp
    except Exception as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
