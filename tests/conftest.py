import os, sys, tempfile
import pytest
from fastapi.testclient import TestClient

# Ensure the chipverify package is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chipverify import db
from chipverify.config import Settings
from chipverify.main import app, _startup
from chipverify.util import hmac_sha256_hex

TEST_DB = os.path.join(tempfile.mkdtemp(prefix="chipverify-tests-"), "chipverify.db")
AUDIT_TOKEN = "test-audit-token"

# Initialize app at module load time against a throwaway database
_startup(Settings(db_path=TEST_DB, audit_export_token=AUDIT_TOKEN, log_level="WARNING"))


# Reset database before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    db.reset_db()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def audit_token():
    return AUDIT_TOKEN


@pytest.fixture
def sign():
    """HMAC a chip would present for (tag_id, ctr)."""
    def _sign(secret, tag_id, ctr):
        return hmac_sha256_hex(secret, f"{tag_id}|{ctr}")
    return _sign


@pytest.fixture
def make_chip():
    """Insert a chip into the test database, optionally linked and owned."""
    def _make_chip(tag_id="TAG123", secret="s3cr3t", counter=1, chip_id=None,
                   artwork_id=None, owner_id=None, username=None):
        chip_id = chip_id or f"chip-{tag_id}"
        db.insert_chip(chip_id, tag_id, secret=secret, counter=counter)
        if artwork_id:
            db.insert_artwork(artwork_id, owner_id=owner_id, username=username)
            db.link_chip(chip_id, artwork_id)
        return chip_id
    return _make_chip
