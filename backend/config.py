"""Application-wide configuration constants."""

import os
import platform
import socket
import uuid
from pathlib import Path

# --- Identity ---
APP_ID = "peerdrop-v1"
CONFIG_DIR = Path(os.environ.get("PEERDROP_CONFIG_DIR", Path.home() / ".peerdrop"))
os.makedirs(CONFIG_DIR, exist_ok=True)

# Generate a persistent device ID (stored in a local file)
_ID_FILE = CONFIG_DIR / "device_id"
if _ID_FILE.exists():
    DEVICE_ID = _ID_FILE.read_text().strip()
else:
    DEVICE_ID = uuid.uuid4().hex[:8]
    _ID_FILE.write_text(DEVICE_ID)

DEVICE_NAME = platform.node() or f"User-{DEVICE_ID[:4]}"

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("PEERDROP_PORT", 3000))  # REST, UI events and presence registry
PRESENCE_PATH = "/ws/presence"
REGISTRY_URL = os.environ.get("PEERDROP_REGISTRY_URL", "")  # tried before the defaults

CONNECT_TIMEOUT = 7  # seconds to wait for the registry to acknowledge a connect
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 1  # seconds between reconnection attempts
SCAN_TIMEOUT = 5  # seconds before an empty scan is reported

# --- Transfer ---
CHUNK_SIZE = 16384  # 16 KB
CHUNK_DELAY = 0.005  # pause between chunks
THROUGHPUT_WINDOW = 1.0  # seconds between throughput samples
PROGRESS_CLEANUP_DELAY = 5  # seconds a completed progress record is kept
CHANNEL_ACCEPT_TIMEOUT = 60  # seconds a receiver waits for the sender to dial in
INTENT_TIMEOUT = 120  # seconds an unanswered transfer request blocks a new one

# --- Storage ---
DEFAULT_SAVE_DIR = str(
    Path.home() / "Downloads" / "PeerDrop"
)


def get_local_ip_address() -> str:
    """Return the first non-loopback IPv4 address of this machine."""
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        for ip in ips:
            if not ip.startswith("127."):
                return ip
    except OSError:
        pass

    # Fall back to the address the default route would use
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("10.255.255.255", 1))
            ip = s.getsockname()[0]
            if not ip.startswith("127."):
                return ip
    except OSError:
        pass
    return "127.0.0.1"


def candidate_endpoints(local_ip: str, port: int = API_PORT) -> list[str]:
    """Ordered registry URLs to try: override, loopback, then the LAN address."""
    urls = []
    if REGISTRY_URL:
        urls.append(REGISTRY_URL)
    urls.append(f"ws://127.0.0.1:{port}{PRESENCE_PATH}")
    urls.append(f"ws://{local_ip}:{port}{PRESENCE_PATH}")

    return list(dict.fromkeys(urls))
