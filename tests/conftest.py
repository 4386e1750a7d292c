import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest

SETTINGS_ENV = (
    "AUTH_PATH",
    "STATE_PATH",
    "OUTDIR",
    "OUTFILE",
    "LG_API_BASE",
    "LG_UID",
    "LOCAL_TZ",
    "LG_DOWNLOAD_CONCURRENCY",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    from genie_sync.config import get_settings

    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
