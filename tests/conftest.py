import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from thesis_validator.main import create_app
from thesis_validator.runtime_profile import RuntimeSettings
from thesis_validator.services import build_in_memory_services
from thesis_validator.worker_runtime import create_worker_runtime

JWT_SECRET = "jwt_test_secret"
ENGAGEMENT_ID = "eng_atlas"
OWNER = "user_owner"
EDITOR = "user_editor"
VIEWER = "user_viewer"
OUTSIDER = "user_outsider"


def issue_token(*, subject: str, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "iss": "test-issuer",
        "aud": "test-audience",
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


class AuthenticatedClient:
    """TestClient wrapper that signs API calls as ``subject`` unless told otherwise.

    Pass ``subject=None`` to send no token, or an explicit ``Authorization``
    header to override the generated one.
    """

    def __init__(self, client: TestClient, *, jwt_secret: str, subject: str):
        self._client = client
        self._jwt_secret = jwt_secret
        self.subject = subject

    def _signed_headers(self, url: str, headers: dict | None, subject: str | None) -> dict:
        merged = dict(headers or {})
        protected = url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/")
        if protected and subject is not None:
            merged.setdefault("Authorization", f"Bearer {issue_token(subject=subject, secret=self._jwt_secret)}")
        return merged

    def request(self, method: str, url: str, *, headers: dict | None = None, **kwargs):
        subject = kwargs.pop("subject", self.subject)
        return self._client.request(method, url, headers=self._signed_headers(url, headers, subject), **kwargs)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.delenv("TRACE_ID_STRICT_REQUIRED", raising=False)
    yield


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings.from_env(
        {
            "TV_QUEUE_RETRY_BACKOFF_BASE_MS": "0",
            "TV_QUEUE_RETRY_BACKOFF_MAX_MS": "0",
            "TV_EVENT_POLL_INTERVAL_MS": "20",
            "WORKER_POLL_INTERVAL_MS": "20",
        }
    )


@pytest.fixture
def services(settings):
    container = build_in_memory_services(settings=settings)
    container.seed_engagement(
        name="Project Atlas",
        owner=OWNER,
        thesis="Roll up regional veterinary clinics into a national platform",
        engagement_id=ENGAGEMENT_ID,
        members={EDITOR: "editor", VIEWER: "viewer"},
    )
    return container


@pytest.fixture
def client(services) -> AuthenticatedClient:
    app = create_app(services)
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET, subject=EDITOR)


@pytest.fixture
def drain(services):
    def _drain(kind: str) -> dict[str, int]:
        return create_worker_runtime(services, kind=kind).run_once()

    return _drain
