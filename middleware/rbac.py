from functools import wraps
from flask import g, jsonify
from config import Config

def require_admin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        # Ensure user is authenticated first (g.user_id should be set by require_auth)
        if not hasattr(g, 'user_id') or not g.user_id:
            return jsonify({"error": "Authentication required"}), 401

        if str(g.user_id) in Config.ADMIN_USER_IDS:
            return f(*args, **kwargs)

        return jsonify({"error": "Forbidden: Admin required"}), 403
    return decorated
