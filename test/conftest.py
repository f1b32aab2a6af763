# /test/conftest.py
import pytest

from relaybridge.core.config import settings


@pytest.fixture(autouse=True)
def isolated_session(tmp_path, monkeypatch):
    """Keep the audit log and ledger files of each test in its own directory."""
    monkeypatch.setattr("relaybridge.core.logger.AUDIT_FILE", tmp_path / "audit.log")
    monkeypatch.setattr(settings, "SESSION_DIR", str(tmp_path))
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path / "data"))
    yield
