from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
import uuid

db = SQLAlchemy()

DEVICE_MODES = ("bridge", "router")
DEVICE_STATUSES = ("online", "offline", "warning")

COMMAND_TYPES = (
    "update_blocklist",
    "exec",
    "reboot",
    "update_firmware",
    "set_config",
    "file_download",
)
COMMAND_STATUSES = ("pending", "sent", "acknowledged", "completed", "failed")
REPORTABLE_STATUSES = ("acknowledged", "completed", "failed")

class Device(db.Model):
    __tablename__ = 'devices'

    device_id = db.Column(db.String(64), primary_key=True) # MAC derived
    user_id = db.Column(db.String(255), index=True) # Owner ID from auth-service
    name = db.Column(db.String(255))
    wifi_ip = db.Column(db.String(64))
    wifi_ssid = db.Column(db.String(255))
    wifi_signal = db.Column(db.Integer) # dBm
    mode = db.Column(db.String(16))
    firmware = db.Column(db.String(64))
    uptime = db.Column(db.Integer, default=0)
    blocked_inbound = db.Column(db.BigInteger, default=0)
    blocked_outbound = db.Column(db.BigInteger, default=0)
    mac_address = db.Column(db.String(64))
    last_reboot = db.Column(db.DateTime)
    public_ip = db.Column(db.String(64))
    public_city = db.Column(db.String(255))
    public_country = db.Column(db.String(255))
    public_lat = db.Column(db.Float)
    public_lng = db.Column(db.Float)
    status = db.Column(db.String(16), default='offline', index=True) # cached hint only
    last_seen = db.Column(db.DateTime, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow) # first seen
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class BlockEvent(db.Model):
    __tablename__ = 'block_events'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = db.Column(db.String(64), db.ForeignKey('devices.device_id', ondelete='CASCADE'), nullable=False)
    delta_inbound = db.Column(db.Integer, default=0)
    delta_outbound = db.Column(db.Integer, default=0)
    total_inbound = db.Column(db.BigInteger, default=0)
    total_outbound = db.Column(db.BigInteger, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        db.Index('idx_block_events_device_time', 'device_id', 'created_at'),
    )

class DeviceMetric(db.Model):
    __tablename__ = 'device_metrics'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = db.Column(db.String(64), db.ForeignKey('devices.device_id', ondelete='CASCADE'), nullable=False)
    disk_total_mb = db.Column(db.Float)
    disk_used_mb = db.Column(db.Float)
    mem_total_mb = db.Column(db.Float)
    mem_used_mb = db.Column(db.Float)
    cpu_load = db.Column(db.Float)
    temp_celsius = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_device_metrics_device_time', 'device_id', 'created_at'),
    )

class DeviceCommand(db.Model):
    __tablename__ = 'device_commands'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # NULL device_id means broadcast to every device
    device_id = db.Column(db.String(64), db.ForeignKey('devices.device_id', ondelete='CASCADE'), nullable=True)
    command_type = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default='pending') # pending, sent, acknowledged, completed, failed
    result = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    sent_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_device_commands_queue', 'device_id', 'status', 'created_at'),
    )

    @property
    def is_broadcast(self):
        return self.device_id is None

class CommandDelivery(db.Model):
    """Per-device delivery of a broadcast command."""
    __tablename__ = 'command_deliveries'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    command_id = db.Column(db.String(36), db.ForeignKey('device_commands.id', ondelete='CASCADE'), nullable=False)
    device_id = db.Column(db.String(64), db.ForeignKey('devices.device_id', ondelete='CASCADE'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='sent')
    result = db.Column(db.Text)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint('command_id', 'device_id', name='_command_delivery_uc'),
    )
