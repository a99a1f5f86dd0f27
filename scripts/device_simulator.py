import requests
import os
import time
import random

# Configuration
API_URL = os.getenv("FLEET_URL", "http://localhost:5000") + "/api/devices/checkin"
DEVICE_KEY = os.getenv("DEVICE_API_KEY", "YOUR_DEVICE_KEY_HERE")
DEVICE_ID = os.getenv("SIM_DEVICE_ID", "AA:BB:CC:00:00:01")
INTERVAL = 10

started = time.time()

# Running totals kept by the device, reported every check-in
counters = {
    "blockedInbound": 0,
    "blockedOutbound": 0,
}

# Results of commands executed since the last check-in
pending_results = []

def get_metrics():
    return {
        "diskTotalMb": 128.0,
        "diskUsedMb": round(random.uniform(40, 60), 1),
        "memTotalMb": 256.0,
        "memUsedMb": round(random.uniform(80, 160), 1),
        "cpuLoad": round(random.uniform(0.05, 1.5), 2),
        "tempCelsius": round(random.uniform(40, 65), 1),
    }

def execute(command):
    """Pretend to run a command and queue its result for the next check-in."""
    cmd_type = command.get("type")
    payload = command.get("payload") or {}
    print(f"  -> executing {cmd_type} {payload}")

    if cmd_type == "exec":
        status, message = "completed", f"ran: {payload.get('script')}"
    elif cmd_type == "reboot":
        global started
        started = time.time()
        status, message = "completed", "rebooted"
    elif cmd_type == "update_firmware" and random.random() < 0.2:
        status, message = "failed", "checksum mismatch"
    else:
        status, message = "completed", "ok"

    pending_results.append({"id": command.get("id"), "status": status, "message": message})

def build_checkin():
    delta_in = random.randint(0, 25)
    delta_out = random.randint(0, 5)
    counters["blockedInbound"] += delta_in
    counters["blockedOutbound"] += delta_out

    payload = {
        "deviceId": DEVICE_ID,
        "wifiIp": "192.168.1.50",
        "wifiSsid": "SimNet",
        "wifiSignal": random.randint(-80, -40),
        "mode": "bridge",
        "firmware": "1.0.2",
        "uptime": int(time.time() - started),
        "macAddress": DEVICE_ID,
        "blockedInbound": counters["blockedInbound"],
        "blockedOutbound": counters["blockedOutbound"],
        "deltaInbound": delta_in,
        "deltaOutbound": delta_out,
        "metrics": get_metrics(),
    }
    if pending_results:
        payload["commandResults"] = list(pending_results)
    return payload

def send_checkin():
    headers = {
        "Authorization": f"Bearer {DEVICE_KEY}",
        "Content-Type": "application/json"
    }

    try:
        print(f"Checking in to {API_URL}...")
        response = requests.post(API_URL, json=build_checkin(), headers=headers, timeout=10)

        if response.status_code != 200:
            print(f"[{response.status_code}] Failed: {response.text}")
            return

        # Results were accepted, do not resend them
        pending_results.clear()
        commands = response.json().get("commands", [])
        print(f"[{response.status_code}] Success, {len(commands)} command(s)")
        for command in commands:
            execute(command)

    except requests.exceptions.RequestException as e:
        print(f"Error: {e}")

if __name__ == "__main__":
    print(f"Starting check-in simulation for {DEVICE_ID}")
    while True:
        send_checkin()
        time.sleep(INTERVAL)
