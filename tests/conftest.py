import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# server.py builds a module-level app on import; keep its directories out of the checkout.
_SCRATCH = tempfile.mkdtemp(prefix="workdrive-bridge-tests-")
os.environ.setdefault("UNIT_TESTING", "1")
os.environ.setdefault("ENV_FILE", os.path.join(_SCRATCH, "none.env"))
os.environ.setdefault("SESSION_STORE", "file")
os.environ.setdefault("SESSION_DIR", os.path.join(_SCRATCH, "sessions"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_SCRATCH, "uploads"))

from fakes import FakeClock, FakeHTTP  # noqa: E402

import server  # noqa: E402
from session_store import FileSessionStore  # noqa: E402
from workdrive import WorkDriveClient  # noqa: E402
from zoho_tokens import ZohoTokenCache  # noqa: E402

API = "https://api.example/workdrive/api/v1"
DOWNLOAD = "https://download.example/v1/workdrive"
WEB = "https://workdrive.example"
ACCOUNTS = "https://accounts.example"


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def token_http():
    return FakeHTTP()


@pytest.fixture
def drive_http():
    return FakeHTTP()


@pytest.fixture
def tokens(token_http, clock):
    return ZohoTokenCache("cid", "csecret", "refresh-1", accounts_base=ACCOUNTS, http=token_http, clock=clock)


@pytest.fixture
def drive(tokens, drive_http):
    return WorkDriveClient(tokens, api_base=API, download_base=DOWNLOAD, web_base=WEB, http=drive_http)


@pytest.fixture
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.fixture
def app(tokens, drive, tmp_path, upload_dir):
    app = server.create_app(
        token_cache=tokens,
        workdrive=drive,
        session_store=FileSessionStore(tmp_path / "sessions"),
        UPLOAD_DIR=str(upload_dir),
        SESSION_SECRET="test-secret",
        ZOHO_CLIENT_ID="cid",
        ZOHO_CLIENT_SECRET="csecret",
        ZOHO_REDIRECT_URI="http://localhost:8000/callback",
        ZOHO_REFRESH_TOKEN="refresh-1",
        ZOHO_FOLDER_ID="folder-root",
        ZOHO_ACCOUNTS_BASE=ACCOUNTS,
    )
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
