"""
Device check-in protocol.

A check-in is the only channel between the fleet and the server: the device
reports its state and results, and picks up whatever commands are due.
Registry upsert and command drain are the critical path; geolocation,
metrics, block events and result bookkeeping are enrichment whose failures
are logged and otherwise ignored.
"""
import logging
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from models import db, Device, BlockEvent, DeviceMetric
from services import registry, command_queue
from services.errors import BadRequest, InternalError
from services.geolocation import geo_service

logger = logging.getLogger("fleet-c2")

METRIC_FIELDS = {
    "diskTotalMb": "disk_total_mb",
    "diskUsedMb": "disk_used_mb",
    "memTotalMb": "mem_total_mb",
    "memUsedMb": "mem_used_mb",
    "cpuLoad": "cpu_load",
    "tempCelsius": "temp_celsius",
}

# Server-derived fields a device may not report about itself
ENRICHMENT_KEYS = ("publicIp", "publicCity", "publicCountry", "publicLat", "publicLng")

def _best_effort(step, subject, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except Exception:
        db.session.rollback()
        logger.exception(f"Check-in step '{step}' failed for {subject}, continuing")
        return None

def _as_count(value, name):
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        logger.warning(f"Ignoring malformed {name}={value!r}")
        return 0
    return int(value)

def _geolocate(caller_ip):
    enrichment = {"publicIp": caller_ip}
    geo = geo_service.lookup(caller_ip)
    if geo:
        enrichment.update({k: v for k, v in geo.items() if v is not None})
    return enrichment

def _record_metrics(device_id, metrics, now):
    if not isinstance(metrics, dict):
        logger.warning(f"Ignoring malformed metrics from {device_id}")
        return None

    sample = DeviceMetric(device_id=device_id, created_at=now)
    for key, column in METRIC_FIELDS.items():
        value = metrics.get(key)
        setattr(sample, column, float(value) if value is not None else None)

    db.session.add(sample)
    db.session.commit()
    return sample

def _record_block_event(device, delta_in, delta_out, now):
    event = BlockEvent(
        device_id=device.device_id,
        delta_inbound=delta_in,
        delta_outbound=delta_out,
        total_inbound=device.blocked_inbound or 0,
        total_outbound=device.blocked_outbound or 0,
        created_at=now,
    )
    db.session.add(event)
    db.session.commit()
    logger.info(f"[Block] Device {device.device_id} - IN:{delta_in} OUT:{delta_out}")
    return event

def _ingest_results(device_id, results, now):
    if not isinstance(results, list):
        logger.warning(f"Ignoring malformed commandResults from {device_id}")
        return

    for entry in results:
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring malformed command result from {device_id}: {entry!r}")
            continue
        _best_effort(
            "command result", device_id,
            command_queue.ingest_result,
            entry.get("id"), entry.get("status"), entry.get("message"),
            device_id=device_id, now=now,
        )

def check_in(data, caller_ip=None, now=None):
    """
    Process one phone-home and return the response body.

    Raises BadRequest for a missing deviceId or malformed reported state and
    InternalError when the registry update or the command drain fails.
    """
    if not isinstance(data, dict):
        raise BadRequest("Invalid JSON body")

    device_id = data.get("deviceId")
    if not device_id or not isinstance(device_id, str):
        raise BadRequest("Missing required field: deviceId")

    now = now or datetime.utcnow()
    state = {k: v for k, v in data.items() if k not in ENRICHMENT_KEYS}

    if caller_ip:
        enrichment = _best_effort("geolocation", device_id, _geolocate, caller_ip)
        state.update(enrichment or {"publicIp": caller_ip})

    delta_in = _as_count(data.get("deltaInbound"), "deltaInbound")
    delta_out = _as_count(data.get("deltaOutbound"), "deltaOutbound")

    try:
        existing = db.session.get(Device, device_id)
        # Devices that only report deltas still get running totals
        if state.get("blockedInbound") is None and delta_in:
            state["blockedInbound"] = ((existing.blocked_inbound or 0) if existing else 0) + delta_in
        if state.get("blockedOutbound") is None and delta_out:
            state["blockedOutbound"] = ((existing.blocked_outbound or 0) if existing else 0) + delta_out

        device = registry.upsert(device_id, state, now=now)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception(f"Device upsert failed for {device_id}")
        raise InternalError("Database error") from e

    if data.get("metrics") is not None:
        _best_effort("metrics", device_id, _record_metrics, device_id, data["metrics"], now)

    if delta_in > 0 or delta_out > 0:
        _best_effort("block event", device_id, _record_block_event, device, delta_in, delta_out, now)

    if data.get("commandResults"):
        _ingest_results(device_id, data["commandResults"], now)

    try:
        commands = command_queue.drain_pending(device_id, now=now)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception(f"Command drain failed for {device_id}")
        raise InternalError("Database error") from e

    logger.info(f"[Checkin] Device {device_id} - {device.mode} mode - {device.wifi_ip} - {len(commands)} command(s)")

    return {
        "success": True,
        "message": "Check-in recorded",
        "device": {
            "id": device.device_id,
            "name": device.name,
        },
        "commands": [{
            "id": cmd.id,
            "type": cmd.command_type,
            "payload": cmd.payload,
        } for cmd in commands],
    }
