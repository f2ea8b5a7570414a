from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from typing import Any

SESSION_TTL_SECONDS = 60 * 60 * 12
DEFAULT_ROLE = "User"

# Staff rights apply only to the stations listed in the token.
RIGHTS_BY_ROLE = {
    "Admin": {
        "checkout": True,
        "operateStations": True,
        "manageAssets": True,
        "reviewWithdrawals": True,
    },
    "Staff": {
        "checkout": True,
        "operateStations": True,
        "manageAssets": True,
        "reviewWithdrawals": False,
    },
    "User": {
        "checkout": True,
        "operateStations": False,
        "manageAssets": False,
        "reviewWithdrawals": False,
    },
}

_LOCK = threading.Lock()
# token id -> expiry; per process, pruned as entries lapse.
_REVOKED_IDS: dict[str, float] = {}


def _load_signing_key() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SIGNING_KEY = _load_signing_key()


def rights_for_role(role: str, overrides: dict[str, Any] | None = None) -> dict[str, bool]:
    rights = dict(RIGHTS_BY_ROLE[role])
    for name, value in (overrides or {}).items():
        if name in rights:
            rights[name] = bool(value)
    return rights


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _mac(body: str) -> bytes:
    return hmac.new(_SIGNING_KEY, body.encode("ascii"), hashlib.sha256).digest()


def issue_session_token(
    user_id: str,
    role: str = DEFAULT_ROLE,
    station_ids: list[str] | tuple[str, ...] = (),
    rights: dict[str, Any] | None = None,
    ttl_seconds: int = SESSION_TTL_SECONDS,
) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValueError("A session needs a user id.")
    if role not in RIGHTS_BY_ROLE:
        role = DEFAULT_ROLE
    claims = {
        "sub": user_id,
        "role": role,
        "rights": rights_for_role(role, rights),
        "stations": [str(item) for item in station_ids] if role == "Staff" else [],
        "jti": secrets.token_hex(8),
        "exp": int(time.time()) + int(ttl_seconds),
    }
    body = _encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_encode(_mac(body))}"


def read_session(token: str | None) -> dict[str, Any] | None:
    """Return the claims of a valid, unexpired, unrevoked token, else None."""
    if not token or token.count(".") != 1:
        return None
    body, signature = token.split(".")
    try:
        if not hmac.compare_digest(_mac(body), _decode(signature)):
            return None
        claims = json.loads(_decode(body).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(claims, dict) or not claims.get("sub"):
        return None

    now = time.time()
    with _LOCK:
        for token_id, expires_at in list(_REVOKED_IDS.items()):
            if expires_at <= now:
                del _REVOKED_IDS[token_id]
        if claims.get("jti") in _REVOKED_IDS:
            return None
    if float(claims.get("exp") or 0) <= now:
        return None
    return claims


def revoke_session_token(token: str | None) -> bool:
    claims = read_session(token)
    if not claims:
        return False
    with _LOCK:
        _REVOKED_IDS[str(claims["jti"])] = float(claims["exp"])
    return True
