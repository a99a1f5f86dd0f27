import ipaddress
import logging
import requests
from config import Config

logger = logging.getLogger("fleet-c2")

class GeoLocationService:
    """Best-effort public IP lookup. Never raises; a failed lookup yields None."""

    def lookup(self, ip):
        if not Config.GEOIP_ENABLED or not ip:
            return None

        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            logger.warning(f"Not looking up malformed IP {ip!r}")
            return None

        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return None

        try:
            resp = requests.get(Config.GEOIP_URL.format(ip=ip), timeout=Config.GEOIP_TIMEOUT)
            if resp.status_code != 200:
                logger.warning(f"Geolocation lookup for {ip} failed: {resp.status_code}")
                return None
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Geolocation lookup for {ip} failed: {e}")
            return None

        # ip-api.com answers 200 with status=fail for unroutable addresses
        if data.get("status") not in (None, "success"):
            logger.warning(f"Geolocation lookup for {ip} rejected: {data.get('message')}")
            return None

        return {
            "publicCity": data.get("city"),
            "publicCountry": data.get("country"),
            "publicLat": data.get("lat"),
            "publicLng": data.get("lon"),
        }

def client_ip(req):
    """Caller's public IP, honouring the first X-Forwarded-For hop set by the proxy."""
    forwarded = req.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return req.headers.get("X-Real-IP") or req.remote_addr

geo_service = GeoLocationService()
