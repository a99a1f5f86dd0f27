from datetime import datetime, timezone
from flask import Blueprint, request, jsonify
from dateutil import parser as date_parser
from models import Device, BlockEvent, DeviceMetric, DeviceCommand
from services import command_queue
from services.errors import BadRequest
from services.liveness import is_online, mark_offline_devices
from services.registry import get_device

fleet_bp = Blueprint("fleet", __name__)

RECENT_EVENTS = 50
RECENT_COMMANDS = 20

def _iso(value):
    return value.isoformat() + 'Z' if value else None

def device_json(d, now):
    inbound = d.blocked_inbound or 0
    outbound = d.blocked_outbound or 0
    return {
        "id": d.device_id,
        "name": d.name,
        "wifiIp": d.wifi_ip,
        "mode": d.mode,
        "firmware": d.firmware,
        "uptime": d.uptime,
        "lastSeen": _iso(d.last_seen),
        "firstSeen": _iso(d.created_at),
        "blockedInbound": inbound,
        "blockedOutbound": outbound,
        "blockedCount": inbound + outbound,
        "wifiSsid": d.wifi_ssid,
        "wifiSignal": d.wifi_signal,
        "status": d.status,
        "isOnline": is_online(d.last_seen, now),
    }

def event_json(e, device_name=None):
    return {
        "id": e.id,
        "deviceId": e.device_id,
        "deviceName": device_name or e.device_id,
        "timestamp": _iso(e.created_at),
        "inbound": e.delta_inbound,
        "outbound": e.delta_outbound,
        "totalInbound": e.total_inbound,
        "totalOutbound": e.total_outbound,
    }

def metric_json(m):
    return {
        "id": m.id,
        "deviceId": m.device_id,
        "diskTotalMb": m.disk_total_mb,
        "diskUsedMb": m.disk_used_mb,
        "memTotalMb": m.mem_total_mb,
        "memUsedMb": m.mem_used_mb,
        "cpuLoad": m.cpu_load,
        "tempCelsius": m.temp_celsius,
        "createdAt": _iso(m.created_at),
    }

def _limit_and_since(default_limit):
    limit = request.args.get("limit", default_limit, type=int)
    if limit is None or limit <= 0:
        raise BadRequest("limit must be a positive integer")

    since = request.args.get("since")
    if since:
        try:
            since = date_parser.isoparse(since)
        except ValueError:
            raise BadRequest("since must be an ISO timestamp")
        if since.tzinfo is not None:
            since = since.astimezone(timezone.utc).replace(tzinfo=None)
    return limit, since

@fleet_bp.route("/api/devices", methods=["GET"])
def list_fleet():
    now = datetime.utcnow()
    # Lazy offline sweep instead of a background scheduler
    mark_offline_devices(now)

    devices = Device.query.order_by(Device.last_seen.desc().nulls_last()).all()
    names = {d.device_id: d.name for d in devices}

    events = BlockEvent.query.order_by(BlockEvent.created_at.desc()).limit(RECENT_EVENTS).all()

    online = sum(1 for d in devices if is_online(d.last_seen, now))
    total_in = sum(d.blocked_inbound or 0 for d in devices)
    total_out = sum(d.blocked_outbound or 0 for d in devices)

    return jsonify({
        "devices": [device_json(d, now) for d in devices],
        "stats": {
            "totalDevices": len(devices),
            "onlineDevices": online,
            "offlineDevices": len(devices) - online,
            "totalInbound": total_in,
            "totalOutbound": total_out,
            "totalBlocked": total_in + total_out,
        },
        "blockEvents": [event_json(e, names.get(e.device_id)) for e in events],
    })

@fleet_bp.route("/api/devices/<device_id>", methods=["GET"])
def device_detail(device_id):
    now = datetime.utcnow()
    d = get_device(device_id)

    latest = DeviceMetric.query.filter_by(device_id=device_id) \
        .order_by(DeviceMetric.created_at.desc()).first()
    events = BlockEvent.query.filter_by(device_id=device_id) \
        .order_by(BlockEvent.created_at.desc()).limit(RECENT_EVENTS).all()
    commands = DeviceCommand.query.filter_by(device_id=device_id) \
        .order_by(DeviceCommand.created_at.desc()).limit(RECENT_COMMANDS).all()

    detail = device_json(d, now)
    detail.update({
        "macAddress": d.mac_address,
        "lastReboot": _iso(d.last_reboot),
        "publicIp": d.public_ip,
        "publicCity": d.public_city,
        "publicCountry": d.public_country,
        "publicLat": d.public_lat,
        "publicLng": d.public_lng,
        "ownerId": d.user_id,
        "metrics": metric_json(latest) if latest else None,
        "recentEvents": [event_json(e, d.name) for e in events],
        "recentCommands": [command_queue.serialize(c) for c in commands],
    })
    return jsonify(detail)

@fleet_bp.route("/api/devices/<device_id>/events", methods=["GET"])
def device_events(device_id):
    d = get_device(device_id)
    limit, since = _limit_and_since(50)

    query = BlockEvent.query.filter_by(device_id=device_id)
    if since:
        query = query.filter(BlockEvent.created_at >= since)
    events = query.order_by(BlockEvent.created_at.desc()).limit(limit).all()

    return jsonify({
        "deviceId": device_id,
        "count": len(events),
        "events": [event_json(e, d.name) for e in events],
    })

@fleet_bp.route("/api/devices/<device_id>/metrics", methods=["GET"])
def device_metrics(device_id):
    get_device(device_id)
    limit, since = _limit_and_since(100)

    query = DeviceMetric.query.filter_by(device_id=device_id)
    if since:
        query = query.filter(DeviceMetric.created_at >= since)
    metrics = query.order_by(DeviceMetric.created_at.desc()).limit(limit).all()

    return jsonify({
        "deviceId": device_id,
        "count": len(metrics),
        "metrics": [metric_json(m) for m in metrics],
    })
