"""
Per-device and broadcast command mailbox.

State machine: pending -> sent (drained by a check-in) -> acknowledged |
completed | failed (reported by the device). Every transition is driven by a
device-initiated request; nothing here reaches out to a device.

Broadcast commands (device_id NULL) are tracked per recipient in
command_deliveries when BROADCAST_DELIVERY is 'per_device'. With
'first_claim' the first device to check in flips the command to 'sent' for
the whole fleet.
"""
import logging
from datetime import datetime
from sqlalchemy import and_, or_, select, func
from models import (
    db, Device, DeviceCommand, CommandDelivery,
    COMMAND_TYPES, COMMAND_STATUSES, REPORTABLE_STATUSES,
)
from config import Config
from services.errors import InvalidCommandType, InvalidPayload, DeviceNotFound, BadRequest, NotFound
from services.store import insert_if_absent

logger = logging.getLogger("fleet-c2")

PER_DEVICE = "per_device"
FIRST_CLAIM = "first_claim"

# Required payload fields per command type; reboot takes none
PAYLOAD_FIELDS = {
    "update_blocklist": ("url",),
    "update_firmware": ("url",),
    "exec": ("script",),
    "file_download": ("url", "path"),
    "set_config": ("key", "value"),
    "reboot": (),
}

def _per_device_broadcasts():
    return Config.BROADCAST_DELIVERY != FIRST_CLAIM

def validate(command_type, payload):
    if command_type not in COMMAND_TYPES:
        raise InvalidCommandType(f"Invalid command type. Must be one of: {', '.join(COMMAND_TYPES)}")

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidPayload("Payload must be an object")

    missing = []
    for field in PAYLOAD_FIELDS[command_type]:
        value = payload.get(field)
        # set_config may legitimately set a falsy value, only absence is an error
        if field == "value":
            if field not in payload or value is None:
                missing.append(field)
        elif not value:
            missing.append(field)

    if missing:
        raise InvalidPayload("Payload must include " + " and ".join(f"'{f}'" for f in missing))

    if command_type == "update_firmware" and "sha256" in payload and not isinstance(payload["sha256"], str):
        raise InvalidPayload("'sha256' must be a string")

    return payload

def enqueue(device_id, command_type, payload):
    payload = validate(command_type, payload)

    device_id = device_id or None
    if device_id and not db.session.get(Device, device_id):
        raise DeviceNotFound()

    cmd = DeviceCommand(
        device_id=device_id,
        command_type=command_type,
        payload=payload,
        status='pending',
        created_at=datetime.utcnow(),
    )
    db.session.add(cmd)
    db.session.commit()

    target = f"device {device_id}" if device_id else "all devices"
    logger.info(f"Queued {command_type} ({cmd.id}) for {target}")
    return cmd

def _claim_targeted(cmd, now):
    # Conditional write: only one concurrent drain can move a row out of 'pending'
    flipped = DeviceCommand.query.filter_by(id=cmd.id, status='pending').update(
        {"status": "sent", "sent_at": now}, synchronize_session=False
    )
    return flipped == 1

def _claim_broadcast(cmd, device_id, now):
    claimed = insert_if_absent(
        CommandDelivery,
        command_id=cmd.id,
        device_id=device_id,
        status='sent',
        sent_at=now,
    )
    if claimed:
        # First delivery moves the broadcast itself out of 'pending'
        DeviceCommand.query.filter_by(id=cmd.id, status='pending').update(
            {"status": "sent", "sent_at": now}, synchronize_session=False
        )
    return claimed

def drain_pending(device_id, limit=None, now=None):
    """
    Claim up to `limit` due commands for a device, oldest first.

    Targeted and broadcast commands interleave by created_at. Each returned
    command has been moved to 'sent' (or given a delivery record) before this
    returns, so an overlapping check-in cannot receive it again.
    """
    limit = limit or Config.COMMAND_DRAIN_LIMIT
    now = now or datetime.utcnow()
    per_device = _per_device_broadcasts()

    targeted = and_(DeviceCommand.device_id == device_id, DeviceCommand.status == 'pending')
    if per_device:
        delivered = select(CommandDelivery.command_id).where(CommandDelivery.device_id == device_id)
        broadcast = and_(
            DeviceCommand.device_id.is_(None),
            DeviceCommand.status.in_(('pending', 'sent')),
            DeviceCommand.id.not_in(delivered),
        )
    else:
        broadcast = and_(DeviceCommand.device_id.is_(None), DeviceCommand.status == 'pending')

    candidates = DeviceCommand.query.filter(or_(targeted, broadcast)) \
        .order_by(DeviceCommand.created_at.asc(), DeviceCommand.id.asc()) \
        .limit(limit) \
        .all()

    drained = []
    for cmd in candidates:
        if cmd.is_broadcast and per_device:
            claimed = _claim_broadcast(cmd, device_id, now)
        else:
            claimed = _claim_targeted(cmd, now)

        if claimed:
            drained.append(cmd)
        else:
            logger.info(f"Command {cmd.id} already claimed by a concurrent check-in, skipping")

    db.session.commit()

    if drained:
        logger.info(f"Delivering {len(drained)} command(s) to {device_id}")
    return drained

def ingest_result(command_id, status, result_text=None, device_id=None, now=None):
    """
    Record a device-reported outcome.

    Never raises for bad input: an unknown id, a foreign device's command or an
    unknown status is logged and ignored. Returns True when the report was
    stored. A command still 'pending' in storage is moved anyway, since the
    device may have run it after the 'sent' transition was lost.
    """
    now = now or datetime.utcnow()

    if status not in REPORTABLE_STATUSES:
        logger.warning(f"Ignoring result for {command_id}: unknown status {status!r}")
        return False

    cmd = db.session.get(DeviceCommand, str(command_id)) if command_id else None
    if not cmd:
        logger.warning(f"Ignoring result for unknown command {command_id!r}")
        return False

    if cmd.device_id and device_id and cmd.device_id != device_id:
        logger.warning(f"Ignoring result for {command_id}: command belongs to {cmd.device_id}, reported by {device_id}")
        return False

    if result_text is not None and not isinstance(result_text, str):
        result_text = str(result_text)

    if cmd.is_broadcast and _per_device_broadcasts():
        if not device_id:
            logger.warning(f"Ignoring result for broadcast {command_id}: reporting device unknown")
            return False
        if not db.session.get(Device, device_id):
            logger.warning(f"Ignoring result for broadcast {command_id}: unknown device {device_id!r}")
            return False
        # Forced transition: make sure a delivery exists even if the claim was lost
        if insert_if_absent(CommandDelivery, command_id=cmd.id, device_id=device_id, status='sent', sent_at=now):
            logger.info(f"Result for broadcast {command_id} from {device_id} arrived before its delivery was recorded")
        delivery = CommandDelivery.query.filter_by(command_id=cmd.id, device_id=device_id).one()
        delivery.status = status
        delivery.result = result_text
        delivery.completed_at = now
        if cmd.status == 'pending':
            cmd.status = 'sent'
            cmd.sent_at = now
    else:
        if cmd.status == 'pending':
            logger.info(f"Command {command_id} reported as {status} while still pending, forcing transition")
            cmd.sent_at = now
        cmd.status = status
        cmd.result = result_text
        cmd.completed_at = now

    db.session.commit()
    logger.info(f"Command {command_id} -> {status}")
    return True

def get_command(command_id):
    cmd = db.session.get(DeviceCommand, command_id)
    if not cmd:
        raise NotFound(f"Command {command_id} not found")
    return cmd

def list_commands(device_id=None, status=None, limit=None):
    limit = limit or Config.COMMAND_LIST_LIMIT
    if status and status not in COMMAND_STATUSES:
        raise BadRequest(f"Invalid status. Must be one of: {', '.join(COMMAND_STATUSES)}")

    query = DeviceCommand.query
    if device_id:
        query = query.filter_by(device_id=device_id)
    if status:
        query = query.filter_by(status=status)

    return query.order_by(DeviceCommand.created_at.desc()).limit(limit).all()

def delivery_counts(command_ids):
    """Map command id -> {status: count} for broadcast deliveries."""
    if not command_ids:
        return {}

    rows = db.session.query(CommandDelivery.command_id, CommandDelivery.status, func.count()) \
        .filter(CommandDelivery.command_id.in_(command_ids)) \
        .group_by(CommandDelivery.command_id, CommandDelivery.status) \
        .all()

    counts = {}
    for command_id, status, n in rows:
        counts.setdefault(command_id, {})[status] = n
    return counts

def serialize(cmd, deliveries=None):
    data = {
        "id": cmd.id,
        "deviceId": cmd.device_id,
        "type": cmd.command_type,
        "payload": cmd.payload,
        "status": cmd.status,
        "result": cmd.result,
        "createdAt": _iso(cmd.created_at),
        "sentAt": _iso(cmd.sent_at),
        "completedAt": _iso(cmd.completed_at),
    }
    if cmd.is_broadcast:
        data["deliveries"] = deliveries or {}
    return data

def _iso(value):
    return value.isoformat() + 'Z' if value else None
