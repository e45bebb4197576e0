import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="botdesk-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "test.db")
os.environ["MTAPI_TOKEN"] = "test-api-key"
os.environ["DB_STARTUP_CHECK"] = "false"

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from botdesk.account_store import create_account  # noqa: E402
from botdesk.models import Base, User, db_session, engine  # noqa: E402
from botdesk.mtapi_client import MtapiClient  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def user():
    with db_session() as session:
        row = User(email="trader@example.com", full_name="Test Trader")
        session.add(row)
        session.flush()
        return row


@pytest.fixture
def make_account(user):
    def _make(**overrides):
        fields = {
            "user_id": user.id,
            "account_number": "1001",
            "server_name": "Broker-Demo",
            "platform": "MT5",
            "password_encrypted": "secret",
            "bridge_session_id": "H1",
            "connection_status": "connected",
        }
        fields.update(overrides)
        return create_account(**fields)

    return _make


@pytest.fixture
def bridge():
    return MagicMock(spec=MtapiClient)
