import logging
from datetime import datetime, timedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from models import db, Device, BlockEvent, DeviceMetric, DeviceCommand, CommandDelivery, DEVICE_MODES
from services.errors import BadRequest, NotFound, Conflict
from services.store import insert_if_absent

logger = logging.getLogger("fleet-c2")

# Check-in keys mapped onto Device columns. Absent keys leave the column untouched.
REPORTED_FIELDS = {
    "wifiIp": "wifi_ip",
    "wifiSsid": "wifi_ssid",
    "wifiSignal": "wifi_signal",
    "mode": "mode",
    "firmware": "firmware",
    "uptime": "uptime",
    "blockedInbound": "blocked_inbound",
    "blockedOutbound": "blocked_outbound",
    "macAddress": "mac_address",
    "publicIp": "public_ip",
    "publicCity": "public_city",
    "publicCountry": "public_country",
    "publicLat": "public_lat",
    "publicLng": "public_lng",
}

# Applied only when a device row is created by its first check-in
FIRST_SEEN_DEFAULTS = {
    "mode": "bridge",
    "firmware": "1.0.0",
    "uptime": 0,
    "blocked_inbound": 0,
    "blocked_outbound": 0,
}

def get_device(device_id):
    device = db.session.get(Device, device_id)
    if not device:
        raise NotFound(f"Device {device_id} not found")
    return device

def validate_reported_state(state):
    mode = state.get("mode")
    if mode is not None and mode not in DEVICE_MODES:
        raise BadRequest(f"Invalid mode '{mode}'. Must be one of: {', '.join(DEVICE_MODES)}")

    for key in ("uptime", "blockedInbound", "blockedOutbound", "wifiSignal"):
        value = state.get(key)
        if value is None or (isinstance(value, int) and not isinstance(value, bool)):
            continue
        # Some JSON encoders emit whole numbers as 3600.0
        if isinstance(value, float) and value.is_integer():
            state[key] = int(value)
            continue
        raise BadRequest(f"'{key}' must be an integer")

def _insert_first_seen(device_id, now):
    created = insert_if_absent(
        Device,
        device_id=device_id,
        created_at=now,
        updated_at=now,
        last_seen=now,
        status='online',
        **FIRST_SEEN_DEFAULTS,
    )
    if created:
        logger.info(f"New device {device_id} seen for the first time")
    else:
        # Lost a race with a concurrent first check-in from the same device
        logger.info(f"Concurrent first check-in for {device_id}, updating existing row")
    return db.session.get(Device, device_id)

def upsert(device_id, reported_state, now=None):
    """
    Create-or-update keyed by device_id.

    Fields missing from reported_state (or reported as null) keep their stored
    value. Counters are last-write-wins: a lower value than stored is a
    device-side reset and becomes the new baseline.
    """
    now = now or datetime.utcnow()
    validate_reported_state(reported_state)

    device = db.session.get(Device, device_id)
    if not device:
        device = _insert_first_seen(device_id, now)
    elif device.last_seen is None:
        # Registered ahead of time, this is its first check-in
        device.created_at = now

    for key, column in REPORTED_FIELDS.items():
        value = reported_state.get(key)
        if value is not None:
            setattr(device, column, value)

    uptime = reported_state.get("uptime")
    if uptime is not None:
        device.last_reboot = now - timedelta(seconds=uptime)

    device.status = 'online'
    device.last_seen = now
    db.session.commit()
    return device

def rename(device_id, name):
    if name is not None and not isinstance(name, str):
        raise BadRequest("Name must be a string")

    device = get_device(device_id)
    device.name = (name or "").strip() or None
    db.session.commit()
    logger.info(f"Renamed {device_id} to {device.name!r}")
    return device

def delete(device_id):
    """Remove a device and everything hanging off it, dependents first, in one transaction."""
    device = get_device(device_id)

    try:
        BlockEvent.query.filter_by(device_id=device_id).delete(synchronize_session=False)
        DeviceMetric.query.filter_by(device_id=device_id).delete(synchronize_session=False)

        targeted = select(DeviceCommand.id).where(DeviceCommand.device_id == device_id)
        CommandDelivery.query.filter(
            (CommandDelivery.device_id == device_id) | CommandDelivery.command_id.in_(targeted)
        ).delete(synchronize_session=False)
        DeviceCommand.query.filter_by(device_id=device_id).delete(synchronize_session=False)

        db.session.delete(device)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Deleted device {device_id} and its dependent records")

def register_owner(device_id, user_id, name=None):
    """Bind a device to an owner, creating a placeholder row if it never checked in."""
    device = db.session.get(Device, device_id)

    if device and device.user_id and device.user_id != user_id:
        raise Conflict("Device is already registered to another account")

    if not device:
        device = Device(
            device_id=device_id,
            name=f"Device {device_id[-6:]}",
            status='offline',
            mode='router', # setup mode until the first check-in
        )
        db.session.add(device)

    device.user_id = user_id
    if isinstance(name, str) and name.strip():
        device.name = name.strip()

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Device was registered concurrently, retry")
    return device

def list_owned(user_id):
    return Device.query.filter_by(user_id=user_id).order_by(Device.created_at.asc()).all()
