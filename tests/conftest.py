import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calsync.infra.storage import EventStorage  # noqa: E402


@pytest.fixture
def storage(tmp_path):
    store = EventStorage(tmp_path / "calsync.db")
    yield store
    store.close()
