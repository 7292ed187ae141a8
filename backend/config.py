"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
GREETING = "I am Cyclops"

# --- Storage ---
CONFIG_DIR = Path(
    os.environ.get("CYCLOPS_LINK_HOME", str(Path.home() / ".cyclops-link"))
)
os.makedirs(CONFIG_DIR, exist_ok=True)
DEVICES_FILE = CONFIG_DIR / "devices.json"

# --- Local control API ---
API_HOST = "127.0.0.1"
API_PORT = int(os.environ.get("CYCLOPS_LINK_API_PORT", "8765"))

# --- Device HTTP contract ---
DEVICE_PORT = 8080
PING_PATH = "/api/ping"
KEYS_PATH = "/api/keys"
WHOAMI_PATH = "/api/auth/whoami"
LOGIN_PATH = "/api/auth/login"
SESSION_COOKIE_NAME = "session"
SESSION_HEADER = "X-Session-Cookie"

# --- Discovery ---
SCAN_WORKERS = 8
PROBE_TIMEOUT = 0.2  # seconds, called up to 254 times per scan
PREFLIGHT_TIMEOUT = 5.0  # seconds, key exchange / whoami / login

# --- Relay ---
RELAY_DOMAIN = os.environ.get("CYCLOPS_LINK_RELAY_DOMAIN", "p.cyclopcam.org")
RELAY_PROXY_URL = "http://proxy-cpt.cyclopcam.org:8083"
RELAY_KEY_COOKIE_NAME = "CyclopsServerPublicKey"
FORCE_RELAY = os.environ.get("CYCLOPS_LINK_FORCE_RELAY", "") in ("1", "true", "yes")

# --- Network monitor ---
NETWORK_POLL_INTERVAL = 5  # seconds


def device_lan_origin(address: str) -> str:
    """Origin of a device's HTTP API on the LAN."""
    return f"http://{address}:{DEVICE_PORT}"


def relay_origin(short_id: str) -> str:
    """Origin of a device when reached through the cloud relay."""
    return f"https://{short_id}.{RELAY_DOMAIN}"
