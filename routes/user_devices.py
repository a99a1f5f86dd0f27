from flask import Blueprint, request, jsonify, g
from middleware.auth import require_auth
from services import registry
from services.liveness import is_online
from services.errors import BadRequest

user_devices_bp = Blueprint("user_devices", __name__)

@user_devices_bp.route("/api/devices/register", methods=["POST"])
@require_auth(allow_body_token=True)
def register_device():
    """
    Binds a device to the authenticated user, creating it if it never checked in.
    """
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Invalid JSON body")

    device_id = data.get("deviceId")
    if not device_id or not isinstance(device_id, str):
        raise BadRequest("Device ID is required")

    device = registry.register_owner(device_id, g.user_id, name=data.get("name"))

    return jsonify({
        "success": True,
        "deviceId": device.device_id,
        "message": "Device registered successfully",
        "device": {
            "id": device.device_id,
            "name": device.name,
            "ownerId": device.user_id,
        },
    }), 200

@user_devices_bp.route("/api/user/devices", methods=["GET"])
@require_auth
def list_user_devices():
    """
    List all devices bound to the authenticated user.
    """
    devices = registry.list_owned(g.user_id)

    return jsonify([{
        "id": d.device_id,
        "name": d.name,
        "firmware": d.firmware,
        "mode": d.mode,
        "status": d.status,
        "isOnline": is_online(d.last_seen),
        "lastSeen": d.last_seen.isoformat() + 'Z' if d.last_seen else None,
    } for d in devices])
