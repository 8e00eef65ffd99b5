import os
import sys
import tempfile
from pathlib import Path

import pytest

SERVICE_DIR = Path(__file__).resolve().parent.parent
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))

# Must be set before ``repo`` creates its engine
_db_dir = tempfile.mkdtemp(prefix="mpesa-sandbox-")
os.environ.setdefault("SANDBOX_DATABASE_URL", f"sqlite:///{_db_dir}/sandbox.db")


@pytest.fixture
def api():
    from fastapi.testclient import TestClient

    from main import app

    with TestClient(app) as c:
        yield c
