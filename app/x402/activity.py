# app/x402/activity.py
"""
Activity log for the payment gate.

Downstream observability sink: the gate appends one event per challenge,
admitted payment and blocked replay. Nothing in the gate reads it back.

Log format: JSON lines (one event per line)
Log location: Configured via ACTIVITY_LOG_PATH

Event shape: {timestamp, type, detail, amount, tx_hash}
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class ActivityType(Enum):
    """Types of activity events."""
    PAYMENT_REQUIRED = "402"
    PAYMENT = "payment"
    REPLAY_BLOCKED = "replay_blocked"
    REGISTER = "register"


def get_activity_log_path() -> Path:
    return Path(settings.ACTIVITY_LOG_PATH)


def create_activity_event(
    event_type: ActivityType,
    detail: str,
    amount: float = 0,
    tx_hash: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an activity event dictionary.

    Args:
        event_type: Type of event
        detail: Human-readable description
        amount: USDC amount involved (human units)
        tx_hash: Transaction hash, when a payment is involved

    Returns:
        A structured event ready to be appended to the log
    """
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": event_type.value,
        "detail": detail,
        "amount": amount,
    }
    if tx_hash:
        event["tx_hash"] = tx_hash
    return event


def log_activity(
    event_type: ActivityType,
    detail: str,
    amount: float = 0,
    tx_hash: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Append an activity event. Failures are logged, never raised.

    Returns:
        The written event, or None on error
    """
    event = create_activity_event(event_type, detail, amount=amount, tx_hash=tx_hash)

    try:
        log_path = get_activity_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Activity logged: {event_type.value} - {detail}")
        return event

    except OSError as e:
        logger.error(f"Failed to write activity event: {e}")
        return None


def read_activity_log(
    max_entries: int = 100,
    event_type: Optional[ActivityType] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the activity log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)

    Returns:
        List of events (most recent first)
    """
    log_path = get_activity_log_path()
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
                if event_type and event.get("type") != event_type.value:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read activity log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_activity_stats() -> Dict[str, Any]:
    """
    Summarize the activity log.

    Returns:
        Dict with event counts per type and total USDC of admitted payments
    """
    log_path = get_activity_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "total_paid_usdc": 0.0,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    for event in read_activity_log(max_entries=None):
        stats["total_events"] += 1
        event_type = event.get("type", "unknown")
        stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1
        if event_type == ActivityType.PAYMENT.value:
            try:
                stats["total_paid_usdc"] += float(event.get("amount") or 0)
            except (TypeError, ValueError):
                continue

    return stats
