import os
import tempfile
from pathlib import Path


_DB_DIR = Path(tempfile.mkdtemp(prefix="shiftcare-tests-"))

# Settings are read at import time, so these must be set before the app is imported
os.environ["ENV"] = "dev"
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR / 'shiftcare.db'}"
os.environ["AUTO_CREATE_SCHEMA"] = "true"
os.environ["OTP_STORE_BACKEND"] = "memory"
os.environ["OTP_SMS_PROVIDER"] = "log"
os.environ.setdefault("OTP_STORAGE_SECRET", "test-storage-secret")
# Keep rate limits generous; test_rate_limit builds its own app with tight limits
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["RATE_LIMIT_OTP_PER_MINUTE"] = "100000"

import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from shiftcare.database import SessionLocal  # noqa: E402
from shiftcare.main import create_app  # noqa: E402
from shiftcare.models import Professional  # noqa: E402


@pytest.fixture()
def app():
    return create_app()


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.query(Professional).delete()
        session.commit()
        session.close()


@pytest.fixture()
def make_professional(db):
    def _make(phone: str, **overrides) -> Professional:
        suffix = uuid.uuid4().hex[:8]
        pro = Professional(
            first_name=overrides.pop("first_name", "Dana"),
            last_name=overrides.pop("last_name", "Reyes"),
            email=overrides.pop("email", f"dana.{suffix}@example.com"),
            phone=phone,
            **overrides,
        )
        db.add(pro)
        db.commit()
        db.refresh(pro)
        return pro

    return _make
