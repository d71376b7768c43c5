import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

import bcrypt
from fastapi import Request

import config
from errors import Unauthenticated

TOKEN_TTL_MS = 7 * 24 * 60 * 60 * 1000


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(payload_str: str) -> str:
    return hmac.new(config.JWT_SECRET.encode("utf-8"), payload_str.encode("utf-8"), hashlib.sha256).hexdigest()


def create_token(user_id: str) -> str:
    payload = {"userId": user_id, "exp": int(time.time() * 1000) + TOKEN_TTL_MS}
    payload_str = json.dumps(payload, separators=(",", ":"))
    return f"{_b64url_encode(payload_str.encode('utf-8'))}.{_sign(payload_str)}"


def verify_token(token_str: str) -> Optional[Dict[str, Any]]:
    try:
        payload_b64, signature = token_str.split(".")
        payload_str = _b64url_decode(payload_b64).decode("utf-8")
        data = json.loads(payload_str)
        if not hmac.compare_digest(signature, _sign(payload_str)):
            return None
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict) or data.get("exp", 0) < int(time.time() * 1000):
        return None
    return data


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def get_user_from_request(request: Request) -> Optional[Dict[str, Any]]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return verify_token(auth_header[7:])


def require_user(request: Request) -> str:
    """FastAPI dependency: the authenticated user id, or ``Unauthenticated``."""
    auth_data = get_user_from_request(request)
    if not auth_data or not auth_data.get("userId"):
        raise Unauthenticated("Unauthorized")
    return auth_data["userId"]
