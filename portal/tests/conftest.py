# portal/tests/conftest.py
import importlib
import os
import secrets

import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

os.environ.setdefault("TESTING", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", secrets.token_urlsafe(32))
os.environ.setdefault("EMAIL_FROM", "noreply@example.com")
os.environ.setdefault("EMAIL_PROVIDER", "console")
os.environ.setdefault("AWS_REGION", "eu-north-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("S3_BUCKET_NAME", "portal-tests")

from portal.main import app
from portal import folders, models
from portal.auth import create_session_token, hash_password
from portal.database import SessionLocal, engine
from portal.rate_limit import LimitsRateLimitStore
from portal.schemas import SessionClaims

# ───────────────────────────────  constants  ──────────────────────────────
AWS_REGION        = "eu-north-1"
BUCKET_NAME       = os.getenv("S3_BUCKET_NAME", "portal-tests")
PASSWORD          = "Str0ng!Passw0rd"

# ───────────────────────── fresh schema per test ──────────────────────────
@pytest.fixture(autouse=True)
def _create_schema():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    app.state.rate_limiter = LimitsRateLimitStore("memory://")
    yield

# ─────────────────────────── fake S3 for every test ───────────────────────
@pytest.fixture(autouse=True)
def s3(monkeypatch):
    """
    * starts moto
    * creates the bucket with correct LocationConstraint
    * reloads & patches portal.utils.s3_utils so it uses the mocked client/bucket
    """
    monkeypatch.setenv("AWS_ACCESS_KEY_ID",     "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_REGION",            AWS_REGION)
    monkeypatch.setenv("S3_BUCKET_NAME",        BUCKET_NAME)
    monkeypatch.delenv("S3_PUBLIC_URL", raising=False)

    with mock_aws():                # moto intercepts all AWS calls
        client = boto3.client(
            "s3",
            region_name=AWS_REGION,
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        client.create_bucket(
            Bucket=BUCKET_NAME,
            CreateBucketConfiguration={"LocationConstraint": AWS_REGION},
        )

        from portal.utils import s3_utils
        importlib.reload(s3_utils)
        s3_utils.s3             = client
        s3_utils.S3_BUCKET_NAME = BUCKET_NAME

        yield client

        app.dependency_overrides.clear()

# ───────────────────────────── test client  ───────────────────────────────
@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

# ───── factories ──────────────────────────────────────────────────────────
@pytest.fixture
def make_company(db):
    def _make(name="Acme", status="active", with_folder=True):
        company = models.Company(company_name=name, account_status=status)
        db.add(company)
        db.commit()
        db.refresh(company)
        if with_folder:
            folders.create_folder(db, name, "company_specific", company_id=company.id)
        return company
    return _make


@pytest.fixture
def make_user(db):
    def _make(company, username="alice", role="customer", password=PASSWORD, activated=True):
        user = models.User(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password(password) if password else None,
            role=role,
            company_id=company.id,
            is_activated=activated,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


def claims_for(user_id=1, company_id=1, role="customer", status="active", username="someone"):
    return SessionClaims(
        user_id=user_id,
        username=username,
        company_id=company_id,
        company_name="Acme",
        role=role,
        account_status=status,
    )


def bearer(claims):
    token, _ = create_session_token(claims)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    """Bearer headers for a session with the given claims, skipping the login flow."""
    def _headers(**kwargs):
        return bearer(claims_for(**kwargs))
    return _headers


@pytest.fixture
def admin_headers(headers_for):
    return headers_for(user_id=999, company_id=999, role="admin", username="root")


@pytest.fixture
def put_blob(s3):
    def _put(key, body=b"x"):
        s3.put_object(Bucket=BUCKET_NAME, Key=key, Body=body)
        from portal.utils import s3_utils
        return s3_utils.url_for(key)
    return _put
