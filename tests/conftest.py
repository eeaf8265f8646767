"""Shared test setup: project root on sys.path, no real keys or network."""
import os
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

# keep the settings import from picking up a developer's .env
os.environ.setdefault("DB_PATH", ":memory:")
os.environ.setdefault("CRANK_ENABLED", "false")
