from __future__ import annotations

import hashlib
import ipaddress
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def sanitize_label(raw: str, *, max_len: int = 63, allow_dots: bool = False) -> str:
    """Normalize user-controlled identifiers into stable lowercase labels."""
    value = str(raw).strip().lower()
    if not value:
        return ""

    value = value.replace("_", "-").replace(" ", "-")
    if allow_dots:
        value = re.sub(r"[^a-z0-9.-]", "-", value)
        value = re.sub(r"\.{2,}", ".", value)
    else:
        value = re.sub(r"[^a-z0-9-]", "-", value)
    value = re.sub(r"-{2,}", "-", value)
    value = value.strip("-.")
    if max_len <= 0:
        return value
    return value[:max_len]


def is_label(value: str) -> bool:
    return bool(_LABEL_RE.match(value))


def parse_advertise_address(raw: str) -> Tuple[str, int]:
    """Split ``ip:port`` (or ``[v6]:port``) and validate both halves."""
    value = raw.strip()
    if value.startswith("["):
        host, sep, port_part = value[1:].partition("]:")
    else:
        host, sep, port_part = value.rpartition(":")
    if not sep or not host or not port_part:
        raise ValueError("advertise address must look like <ip>:<port>")
    try:
        ipaddress.ip_address(host)
    except ValueError as exc:
        raise ValueError(f"advertise address host is not an IP address: {host}") from exc
    if not port_part.isdigit():
        raise ValueError(f"advertise address port is not numeric: {port_part}")
    port = int(port_part)
    if port < 1 or port > 65535:
        raise ValueError(f"advertise address port out of range: {port}")
    return host, port


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return True
