from functools import wraps
from flask import request, g, jsonify
import hmac
import requests
import logging
from config import Config

logger = logging.getLogger("fleet-c2")

def _bearer(value):
    if value and value.startswith("Bearer "):
        return value.split(" ", 1)[1].strip()
    return value

def _verify_token(auth_header):
    """Ask the auth service who owns the token. Returns (user_id, error_response)."""
    try:
        resp = requests.get(
            f"{Config.AUTH_SERVICE_URL}/api/token/verify",
            headers={"Authorization": auth_header},
            timeout=5
        )

        if resp.status_code != 200:
            logger.warning(f"Auth failed: {resp.status_code} {resp.text}")
            return None, (jsonify({"error": "Unauthorized"}), 401)

        # {"isValid": true, "user_id": 123}
        user_id = resp.json().get("user_id")
        if not user_id:
            return None, (jsonify({"error": "Invalid token payload"}), 401)

        return str(user_id), None

    except requests.exceptions.RequestException as e:
        logger.error(f"Auth Service unreachable: {e}")
        return None, (jsonify({"error": "Authentication unavailable"}), 503)

def require_auth(f=None, allow_body_token=False):
    """
    Dashboard/admin authentication against the external auth service.

    allow_body_token accepts {"token": "..."} in the JSON body for device
    HTTP clients that cannot set headers.
    """
    def decorator(fn):
        @wraps(fn)
        def decorated(*args, **kwargs):
            auth_header = request.headers.get("Authorization")
            if not auth_header and allow_body_token:
                body = request.get_json(force=True, silent=True)
                if isinstance(body, dict) and body.get("token"):
                    auth_header = f"Bearer {body['token']}"

            if not auth_header:
                return jsonify({"error": "Missing Authorization header"}), 401

            user_id, error = _verify_token(auth_header)
            if error:
                return error

            g.user_id = user_id
            return fn(*args, **kwargs)
        return decorated

    if f is not None:
        return decorator(f)
    return decorator

def require_device_key(f):
    """Device-facing shared secret: 'Authorization: Bearer <key>' or the raw key."""
    @wraps(f)
    def decorated(*args, **kwargs):
        expected = Config.DEVICE_API_KEY
        if not expected:
            logger.error("DEVICE_API_KEY is not configured, rejecting device request")
            return jsonify({"error": "Unauthorized"}), 401

        presented = _bearer(request.headers.get("Authorization"))
        if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.warning(f"Rejected device request from {request.remote_addr}: bad API key")
            return jsonify({"error": "Unauthorized"}), 401

        return f(*args, **kwargs)
    return decorated
