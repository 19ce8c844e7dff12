from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import current_app, g, jsonify, request


def _secret() -> str:
    return current_app.config.get("SECRET_KEY") or "changeme"


def make_access_token(payload: dict, secret: str, hours: int = 1) -> str:
    to_encode = dict(payload)
    to_encode.setdefault("exp", datetime.now(timezone.utc) + timedelta(hours=hours))
    return jwt.encode(to_encode, secret, algorithm="HS256")


def requires_auth(role: str | None = None):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer "):
                return jsonify({"success": False, "message": "Missing or invalid Authorization header"}), 401
            token = auth.split(" ", 1)[1].strip()
            try:
                claims = jwt.decode(token, _secret(), algorithms=["HS256"])
            except jwt.PyJWTError as e:
                return jsonify({"success": False, "message": "Invalid token", "error": str(e)}), 401
            if role and claims.get("role") != role:
                return jsonify({"success": False, "message": "Forbidden"}), 403
            g.user = claims
            return fn(*args, **kwargs)
        return wrapper
    return decorator
