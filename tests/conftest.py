import os
import sys
import tempfile
from pathlib import Path

# Keep the persisted device id out of the real home directory
os.environ.setdefault("PEERDROP_CONFIG_DIR", tempfile.mkdtemp(prefix="peerdrop-test-"))

# Ensure local "backend/" takes precedence over any installed copy.
ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"

backend_str = str(BACKEND)
if backend_str not in sys.path:
    sys.path.insert(0, backend_str)
