import logging
from flask import Blueprint, request, jsonify, g
from middleware.auth import require_auth
from middleware.rbac import require_admin
from services import command_queue, registry
from services.errors import BadRequest

logger = logging.getLogger("fleet-c2")

management_bp = Blueprint("management", __name__)

# --- Commands ---

@management_bp.route("/api/devices/commands", methods=["POST"])
@require_auth
@require_admin
def create_command():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Invalid JSON body")

    device_id = data.get("deviceId")
    if device_id is not None and not isinstance(device_id, str):
        raise BadRequest("deviceId must be a string or null")

    cmd = command_queue.enqueue(device_id, data.get("type"), data.get("payload"))
    logger.info(f"User {g.user_id} created command {cmd.id}")

    return jsonify({
        "success": True,
        "command": {
            "id": cmd.id,
            "type": cmd.command_type,
            "deviceId": cmd.device_id,
            "status": cmd.status,
            "createdAt": cmd.created_at.isoformat() + 'Z',
        },
    })

@management_bp.route("/api/devices/commands", methods=["GET"])
@require_auth
def list_commands():
    commands = command_queue.list_commands(
        device_id=request.args.get("deviceId"),
        status=request.args.get("status"),
    )
    counts = command_queue.delivery_counts([c.id for c in commands if c.is_broadcast])

    return jsonify({
        "commands": [command_queue.serialize(c, counts.get(c.id)) for c in commands],
    })

@management_bp.route("/api/devices/commands/<command_id>", methods=["GET"])
@require_auth
def get_command(command_id):
    cmd = command_queue.get_command(command_id)
    counts = command_queue.delivery_counts([cmd.id]) if cmd.is_broadcast else {}
    return jsonify(command_queue.serialize(cmd, counts.get(cmd.id)))

# --- Devices ---

@management_bp.route("/api/devices/<device_id>", methods=["PATCH"])
@require_auth
@require_admin
def rename_device(device_id):
    body = request.get_json(force=True, silent=True)
    if not isinstance(body, dict) or "name" not in body:
        raise BadRequest("No valid fields to update")

    device = registry.rename(device_id, body["name"])
    return jsonify({
        "success": True,
        "device": {
            "id": device.device_id,
            "name": device.name,
        },
    })

@management_bp.route("/api/devices/<device_id>", methods=["DELETE"])
@require_auth
@require_admin
def delete_device(device_id):
    registry.delete(device_id)
    return jsonify({"success": True, "message": "Device deleted"})
