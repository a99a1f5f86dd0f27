import logging
from datetime import datetime, timedelta
from models import db, Device
from config import Config

logger = logging.getLogger("fleet-c2")

def offline_threshold() -> timedelta:
    return timedelta(seconds=Config.OFFLINE_AFTER_SECONDS)

def is_online(last_seen, now=None) -> bool:
    """Authoritative liveness: derived from last_seen only, never from the cached status."""
    if last_seen is None:
        return False
    now = now or datetime.utcnow()
    return (now - last_seen) < offline_threshold()

def mark_offline_devices(now=None) -> int:
    """
    Flip the cached status of stale devices to 'offline'.

    Idempotent: a second call with the same clock touches no rows.
    Returns the number of devices flipped.
    """
    now = now or datetime.utcnow()
    cutoff = now - offline_threshold()
    flipped = Device.query.filter(
        Device.status != 'offline',
        Device.last_seen < cutoff,
    ).update({"status": "offline"}, synchronize_session=False)

    if flipped:
        db.session.commit()
        logger.info(f"Marked {flipped} device(s) offline (last seen before {cutoff.isoformat()}Z)")
    return flipped
