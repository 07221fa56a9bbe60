from __future__ import annotations

import json
import re
from typing import Iterable, List, Optional, Set


JID_USER_SUFFIX = "@s.whatsapp.net"
JID_GROUP_SUFFIX = "@g.us"

_JID_PATTERNS = (
    re.compile(r"^\d{10,15}@s\.whatsapp\.net$"),  # individual
    re.compile(r"^\d{10,20}@g\.us$"),  # group
)


def normalize_jid(identity: str) -> str:
    """Return the canonical JID for an identity.

    Bare phone numbers (optionally with a leading '+') get the individual-chat
    suffix; anything already containing '@' is kept as-is (trimmed).
    """
    s = identity.strip()
    if "@" in s:
        return s
    return f"{s.lstrip('+')}{JID_USER_SUFFIX}"


def validate_jid(jid: Optional[str]) -> bool:
    """Return True for an individual (10-15 digits) or group (10-20 digits) JID."""
    if not jid or not isinstance(jid, str):
        return False
    return any(p.match(jid) for p in _JID_PATTERNS)


def parse_identity_list(raw: Optional[str]) -> Set[str]:
    """Parse identities from CSV or JSON array.

    Accepts either:
    - JSON array: e.g., "[919876543210, \"919812345678@s.whatsapp.net\"]"
    - CSV (commas/newlines/spaces treated as separators): "919876543210, 120363000000000001@g.us"

    Returns a set of normalized JIDs. Empty or invalid input yields an empty set.
    """
    if not raw or not isinstance(raw, str):
        return set()

    # Try JSON first
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, list):
        return _normalize_all(_json_tokens(data))

    # Fallback to CSV parsing; split on commas/newlines/spaces
    norm = raw.replace("\n", ",").replace(" ", ",")
    items: List[str] = [tok.strip() for tok in norm.split(",") if tok.strip()]
    out: List[str] = []
    for tok in items:
        if (tok.startswith('"') and tok.endswith('"')) or (tok.startswith("'") and tok.endswith("'")):
            tok = tok[1:-1]
        out.append(tok)
    return _normalize_all(out)


def _json_tokens(data: list) -> List[str]:
    out: List[str] = []
    for item in data:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            out.append(str(item))
        elif isinstance(item, float):
            if float(item).is_integer():
                out.append(str(int(item)))
        elif isinstance(item, str):
            out.append(item)
    return out


def _normalize_all(tokens: Iterable[str]) -> Set[str]:
    return {normalize_jid(t) for t in tokens if t and t.strip()}
