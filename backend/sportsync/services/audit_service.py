"""Insert-only audit trail for operator actions on reference data.

Manual fixture overrides land here with their per-field {old, new} diff.
Nothing in this module updates or deletes audit_logs rows.
"""

import ipaddress
import logging
from typing import Any, Optional

from fastapi import Request

import sportsync.database as _db
from sportsync.utils import utcnow

logger = logging.getLogger("sportsync.audit")


def _truncate_ip(ip: str) -> str:
    """Mask the host part: 192.168.1.42 -> 192.168.1.xxx, 2001:db8::1 -> 2001:db8::xxx."""
    if not ip:
        return ""
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return ""
    if parsed.version == 4:
        return ip.rsplit(".", 1)[0] + ".xxx"
    head = ip.rpartition(":")[0]
    return f"{head}:xxx" if head else ""


def _client_ip(request: Optional[Request]) -> str:
    if request is None:
        return ""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = getattr(request, "client", None)
    return client.host if client else ""


async def log_audit(
    *,
    actor_id: str,
    target_id: str,
    action: str,
    metadata: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
    database=None,
) -> None:
    """Append one audit_logs row.

    Failures are logged and swallowed: the audited write has already
    happened and must not be reported as failed because its audit row was.
    """
    entry = {
        "timestamp": utcnow(),
        "actor_id": actor_id,
        "target_id": target_id,
        "action": action,
        "metadata": metadata or {},
        "ip_truncated": _truncate_ip(_client_ip(request)),
    }
    target_db = database if database is not None else _db.db
    try:
        await target_db.audit_logs.insert_one(entry)
    except Exception:
        logger.exception("Audit write failed: action=%s actor=%s target=%s", action, actor_id, target_id)
