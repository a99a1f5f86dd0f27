import unittest
from unittest.mock import patch, MagicMock
import sys
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEVICE_API_KEY"] = "test-device-key"
os.environ["ADMIN_USER_IDS"] = "41"
os.environ["GEOIP_ENABLED"] = "false"

# Add parent dir
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, db
from config import Config
from models import Device, BlockEvent, DeviceMetric, DeviceCommand, CommandDelivery
from services import command_queue

DEVICE_HEADERS = {"Authorization": "Bearer test-device-key"}

class TestCheckin(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.app = app.test_client()
        self.app_context = app.app_context()
        self.app_context.push()
        db.drop_all()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        self.app_context.pop()

    def checkin(self, payload, headers=DEVICE_HEADERS, **kwargs):
        return self.app.post('/api/devices/checkin', json=payload, headers=headers, **kwargs)

    # --- Authentication and shape ---

    def test_missing_key_rejected(self):
        resp = self.checkin({"deviceId": "AA:BB"}, headers={})
        self.assertEqual(resp.status_code, 401)
        self.assertIsNone(db.session.get(Device, "AA:BB"))

    def test_wrong_key_rejected(self):
        resp = self.checkin({"deviceId": "AA:BB"}, headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 401)

    def test_raw_key_accepted(self):
        resp = self.checkin({"deviceId": "AA:BB"}, headers={"Authorization": "test-device-key"})
        self.assertEqual(resp.status_code, 200)

    def test_unconfigured_key_rejects_everything(self):
        with patch.object(Config, "DEVICE_API_KEY", None):
            resp = self.checkin({"deviceId": "AA:BB"})
        self.assertEqual(resp.status_code, 401)

    def test_auth_checked_before_body(self):
        resp = self.checkin({}, headers={})
        self.assertEqual(resp.status_code, 401)

    def test_missing_device_id(self):
        resp = self.checkin({"firmware": "1.0.0"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("deviceId", resp.json['error'])

    def test_malformed_json(self):
        resp = self.app.post('/api/devices/checkin', data="{not json", headers=DEVICE_HEADERS)
        self.assertEqual(resp.status_code, 400)

    def test_json_without_content_type(self):
        resp = self.app.post('/api/devices/checkin', data='{"deviceId": "AA:BB"}', headers=DEVICE_HEADERS)
        self.assertEqual(resp.status_code, 200)

    def test_invalid_mode_rejected(self):
        resp = self.checkin({"deviceId": "AA:BB", "mode": "switch"})
        self.assertEqual(resp.status_code, 400)

    def test_whole_float_counters_accepted(self):
        resp = self.checkin({"deviceId": "AA:BB", "uptime": 3600.0, "blockedInbound": 12.0, "wifiSignal": -61.0})

        self.assertEqual(resp.status_code, 200)
        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.uptime, 3600)
        self.assertEqual(device.blocked_inbound, 12)
        self.assertEqual(device.wifi_signal, -61)

        resp = self.checkin({"deviceId": "AA:BB", "uptime": 3600.5})
        self.assertEqual(resp.status_code, 400)

    # --- Registry ---

    def test_first_checkin_creates_device(self):
        resp = self.checkin({
            "deviceId": "AA:BB",
            "wifiIp": "192.168.1.100",
            "mode": "bridge",
            "firmware": "1.2.0",
            "uptime": 3600,
            "wifiSsid": "OfficeWiFi",
            "wifiSignal": -45,
            "macAddress": "AA:BB:CC:DD:EE:FF",
        })

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json, {
            "success": True,
            "message": "Check-in recorded",
            "device": {"id": "AA:BB", "name": None},
            "commands": [],
        })

        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.status, "online")
        self.assertEqual(device.wifi_ssid, "OfficeWiFi")
        self.assertEqual(device.wifi_signal, -45)
        self.assertEqual(device.mac_address, "AA:BB:CC:DD:EE:FF")
        self.assertIsNotNone(device.last_reboot)
        self.assertEqual(device.public_ip, "127.0.0.1")

    def test_repeated_checkin_is_idempotent(self):
        payload = {"deviceId": "AA:BB", "wifiIp": "10.0.0.2", "firmware": "1.2.0", "blockedInbound": 7}
        self.checkin(payload)
        first = db.session.get(Device, "AA:BB")
        first_seen, first_last_seen = first.created_at, first.last_seen
        db.session.expire_all()

        self.checkin(payload)
        second = db.session.get(Device, "AA:BB")

        self.assertEqual(second.created_at, first_seen)
        self.assertGreaterEqual(second.last_seen, first_last_seen)
        self.assertEqual((second.wifi_ip, second.firmware, second.blocked_inbound), ("10.0.0.2", "1.2.0", 7))
        self.assertEqual(Device.query.count(), 1)

    def test_absent_fields_keep_stored_values(self):
        self.checkin({"deviceId": "AA:BB", "wifiIp": "10.0.0.2", "wifiSsid": "Home", "mode": "router"})
        self.checkin({"deviceId": "AA:BB", "firmware": "2.0.0"})

        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.wifi_ip, "10.0.0.2")
        self.assertEqual(device.wifi_ssid, "Home")
        self.assertEqual(device.mode, "router")
        self.assertEqual(device.firmware, "2.0.0")

    def test_lower_counters_overwrite(self):
        self.checkin({"deviceId": "AA:BB", "blockedInbound": 500, "blockedOutbound": 80})
        self.checkin({"deviceId": "AA:BB", "blockedInbound": 3, "blockedOutbound": 0})

        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.blocked_inbound, 3)
        self.assertEqual(device.blocked_outbound, 0)

    def test_device_cannot_report_its_own_geolocation(self):
        self.checkin({"deviceId": "AA:BB", "publicCountry": "Atlantis"})
        self.assertIsNone(db.session.get(Device, "AA:BB").public_country)

    # --- Block events and metrics ---

    def test_delta_creates_one_event(self):
        self.checkin({"deviceId": "AA:BB", "blockedInbound": 105, "blockedOutbound": 20,
                      "deltaInbound": 5, "deltaOutbound": 0})

        events = BlockEvent.query.all()
        self.assertEqual(len(events), 1)
        self.assertEqual((events[0].delta_inbound, events[0].delta_outbound), (5, 0))
        self.assertEqual((events[0].total_inbound, events[0].total_outbound), (105, 20))

    def test_zero_deltas_create_nothing(self):
        self.checkin({"deviceId": "AA:BB", "blockedInbound": 10, "deltaInbound": 0, "deltaOutbound": 0})
        self.assertEqual(BlockEvent.query.count(), 0)

    def test_malformed_delta_ignored(self):
        resp = self.checkin({"deviceId": "AA:BB", "deltaInbound": "lots"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(BlockEvent.query.count(), 0)

    def test_metrics_snapshot_recorded(self):
        self.checkin({"deviceId": "AA:BB", "metrics": {
            "diskTotalMb": 128, "diskUsedMb": 40, "memTotalMb": 256,
            "memUsedMb": 100, "cpuLoad": 0.35, "tempCelsius": 51.5,
        }})

        sample = DeviceMetric.query.one()
        self.assertEqual(sample.device_id, "AA:BB")
        self.assertEqual(sample.mem_used_mb, 100)
        self.assertEqual(sample.temp_celsius, 51.5)

    def test_bad_metrics_do_not_fail_checkin(self):
        resp = self.checkin({"deviceId": "AA:BB", "metrics": {"cpuLoad": "high"}})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(DeviceMetric.query.count(), 0)
        self.assertEqual(db.session.get(Device, "AA:BB").status, "online")

    # --- Commands ---

    def test_pending_commands_delivered(self):
        self.checkin({"deviceId": "AA:BB"})
        cmd = command_queue.enqueue("AA:BB", "set_config", {"key": "network.lan.ipaddr", "value": "192.168.1.1"})

        resp = self.checkin({"deviceId": "AA:BB"})

        self.assertEqual(resp.json['commands'], [{
            "id": cmd.id,
            "type": "set_config",
            "payload": {"key": "network.lan.ipaddr", "value": "192.168.1.1"},
        }])
        self.assertEqual(self.checkin({"deviceId": "AA:BB"}).json['commands'], [])

    def test_first_checkin_receives_broadcast(self):
        cmd = command_queue.enqueue(None, "update_blocklist", {"url": "https://lists/ips.txt"})

        resp = self.checkin({"deviceId": "NEW:01"})

        self.assertEqual([c['id'] for c in resp.json['commands']], [cmd.id])

    def test_bad_command_results_do_not_fail_checkin(self):
        self.checkin({"deviceId": "AA:BB"})
        cmd = command_queue.enqueue("AA:BB", "reboot", {})

        resp = self.checkin({"deviceId": "AA:BB", "commandResults": [
            {"id": "no-such-command", "status": "completed"},
            {"id": cmd.id, "status": "melted"},
            "garbage",
        ]})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([c['id'] for c in resp.json['commands']], [cmd.id])

    def test_result_endpoint(self):
        self.checkin({"deviceId": "AA:BB"})
        cmd = command_queue.enqueue("AA:BB", "exec", {"script": "uptime"})
        self.checkin({"deviceId": "AA:BB"})

        resp = self.app.post(f'/api/devices/commands/{cmd.id}/result',
                             json={"status": "completed", "message": "up 3 days"},
                             headers=DEVICE_HEADERS)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(db.session.get(DeviceCommand, cmd.id).result, "up 3 days")

        resp = self.app.post('/api/devices/commands/missing/result',
                             json={"status": "completed"}, headers=DEVICE_HEADERS)
        self.assertEqual(resp.status_code, 404)

    def test_checkin_results_stored_and_next_commands_delivered(self):
        self.checkin({"deviceId": "AA:BB"})
        done = command_queue.enqueue("AA:BB", "reboot", {})
        self.checkin({"deviceId": "AA:BB"})
        queued = command_queue.enqueue("AA:BB", "exec", {"script": "id"})

        resp = self.checkin({"deviceId": "AA:BB", "commandResults": [
            {"id": done.id, "status": "completed", "message": "rebooted"},
        ]})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([c['id'] for c in resp.json['commands']], [queued.id])
        stored = db.session.get(DeviceCommand, done.id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.result, "rebooted")

    def test_broadcast_result_from_unknown_device_rejected(self):
        self.checkin({"deviceId": "AA:BB"})
        cmd = command_queue.enqueue(None, "reboot", {})
        self.checkin({"deviceId": "AA:BB"})

        resp = self.app.post(f'/api/devices/commands/{cmd.id}/result',
                             json={"status": "completed", "deviceId": "GHOST"},
                             headers=DEVICE_HEADERS)

        self.assertEqual(resp.status_code, 404)
        self.assertEqual(CommandDelivery.query.filter_by(device_id="GHOST").count(), 0)
        self.assertEqual(command_queue.delivery_counts([cmd.id])[cmd.id], {"sent": 1})

        resp = self.app.post(f'/api/devices/commands/{cmd.id}/result',
                             json={"status": "completed", "deviceId": "AA:BB"},
                             headers=DEVICE_HEADERS)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(command_queue.delivery_counts([cmd.id])[cmd.id], {"completed": 1})

    def test_end_to_end(self):
        # 1. totals only, no deltas
        self.checkin({"deviceId": "AA:BB", "blockedInbound": 100, "blockedOutbound": 20})
        device = db.session.get(Device, "AA:BB")
        self.assertEqual((device.blocked_inbound, device.blocked_outbound), (100, 20))
        self.assertEqual(BlockEvent.query.count(), 0)

        # 2. admin queues a blocklist update
        cmd = command_queue.enqueue("AA:BB", "update_blocklist", {"url": "https://x"})
        cmd_id = cmd.id

        # 3. delta check-in picks it up
        resp = self.checkin({"deviceId": "AA:BB", "deltaInbound": 5})
        self.assertEqual(resp.json['commands'], [{"id": cmd_id, "type": "update_blocklist", "payload": {"url": "https://x"}}])
        self.assertEqual(db.session.get(DeviceCommand, cmd_id).status, "sent")

        event = BlockEvent.query.one()
        self.assertEqual((event.delta_inbound, event.total_inbound), (5, 105))

        # 4. result reported on the next check-in
        resp = self.checkin({"deviceId": "AA:BB", "commandResults": [
            {"id": cmd_id, "status": "completed", "message": "ok"},
        ]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json['commands'], [])

        db.session.expire_all()
        stored = db.session.get(DeviceCommand, cmd_id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.result, "ok")

    # --- Geolocation enrichment ---

    @patch('services.geolocation.requests.get')
    def test_public_ip_geolocated(self, mock_get):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "status": "success", "city": "Lisbon", "country": "Portugal", "lat": 38.7, "lon": -9.1,
        }
        mock_get.return_value = mock_response

        with patch.object(Config, "GEOIP_ENABLED", True):
            self.checkin({"deviceId": "AA:BB"}, environ_base={"REMOTE_ADDR": "10.0.0.1"},
                         headers={**DEVICE_HEADERS, "X-Forwarded-For": "8.8.8.8, 10.0.0.1"})

        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.public_ip, "8.8.8.8")
        self.assertEqual(device.public_city, "Lisbon")
        self.assertEqual(device.public_lng, -9.1)

    @patch('services.geolocation.requests.get')
    def test_geolocation_failure_is_swallowed(self, mock_get):
        import requests
        mock_get.side_effect = requests.exceptions.ConnectTimeout("slow")

        with patch.object(Config, "GEOIP_ENABLED", True):
            resp = self.checkin({"deviceId": "AA:BB"}, headers={**DEVICE_HEADERS, "X-Forwarded-For": "8.8.8.8"})

        self.assertEqual(resp.status_code, 200)
        device = db.session.get(Device, "AA:BB")
        self.assertEqual(device.public_ip, "8.8.8.8")
        self.assertIsNone(device.public_city)

    @patch('services.geolocation.requests.get')
    def test_private_addresses_not_looked_up(self, mock_get):
        with patch.object(Config, "GEOIP_ENABLED", True):
            self.checkin({"deviceId": "AA:BB"}, headers={**DEVICE_HEADERS, "X-Forwarded-For": "192.168.1.5"})
        mock_get.assert_not_called()

if __name__ == '__main__':
    unittest.main()
