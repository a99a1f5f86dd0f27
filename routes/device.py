import logging
from flask import Blueprint, request, jsonify
from middleware.auth import require_device_key
from services import checkin, command_queue
from services.errors import BadRequest, NotFound
from services.geolocation import client_ip

logger = logging.getLogger("fleet-c2")

device_bp = Blueprint("device", __name__)

@device_bp.route("/api/devices/checkin", methods=["POST"])
@require_device_key
def device_checkin():
    # Some device HTTP clients send JSON without a Content-Type header
    data = request.get_json(force=True, silent=True)
    if data is None:
        raise BadRequest("Invalid JSON body")

    return jsonify(checkin.check_in(data, caller_ip=client_ip(request)))

@device_bp.route("/api/devices/commands/<command_id>/result", methods=["POST"])
@require_device_key
def command_result(command_id):
    data = request.get_json(force=True, silent=True) or {}
    if not isinstance(data, dict):
        raise BadRequest("Invalid JSON body")
    if data.get("deviceId") is not None and not isinstance(data["deviceId"], str):
        raise BadRequest("deviceId must be a string")

    applied = command_queue.ingest_result(
        command_id,
        data.get("status", "failed"),
        data.get("message", data.get("result", "")),
        device_id=data.get("deviceId"),
    )
    if not applied:
        raise NotFound("Command not found or result rejected")

    return jsonify({"message": "Result recorded"})
