import sys
from app import app
from models import Device, DeviceCommand
from services.liveness import is_online

device_id = sys.argv[1] if len(sys.argv) > 1 else 'AA:BB:CC:00:00:01'

with app.app_context():
    d = Device.query.get(device_id)
    if d:
        print(f"Device: {d.device_id}, Name: {d.name}, Owner: {d.user_id}")
        print(f"Last seen: {d.last_seen}, Online: {is_online(d.last_seen)} (cached status: {d.status})")
        print(f"Blocked: IN {d.blocked_inbound} / OUT {d.blocked_outbound}")

        pending = DeviceCommand.query.filter(
            (DeviceCommand.device_id == device_id) | (DeviceCommand.device_id.is_(None)),
            DeviceCommand.status == 'pending',
        ).count()
        print(f"Pending commands (incl. broadcasts): {pending}")
    else:
        print("Device not found")
