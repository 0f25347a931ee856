import asyncio
import datetime as dt
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Set before anything imports convergeauth.config
_test_tmp_dir = tempfile.mkdtemp(prefix="convergeauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec, rsa  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from convergeauth.app import create_app  # noqa: E402
from convergeauth.config import Settings, reset_settings_cache  # noqa: E402
from convergeauth.service.runtime import Runtime  # noqa: E402

JWT_SECRET = "unit-test-jwt-secret-0123456789abcdef0123456789"
SIGNING_KID = "test-kid"
MICROSOFT_TENANT_ID = "9188040d-6c67-4c5b-b112-36a304b66dad"


def _pem_private(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def apple_signing_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def idp_certificate():
    """Self-signed certificate and key a SAML identity provider signs with."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.example.com")])
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return {
        "key_pem": _pem_private(key),
        "cert_pem": cert.public_bytes(serialization.Encoding.PEM).decode(),
    }


@pytest.fixture
def jwks(rsa_key):
    public_jwk = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    public_jwk.update({"kid": SIGNING_KID, "use": "sig", "alg": "RS256"})
    return {"keys": [public_jwk]}


@pytest.fixture
def sign_id_token(rsa_key):
    def _sign(claims: dict, *, kid: str = SIGNING_KID, key=None) -> str:
        now = dt.datetime.now(dt.timezone.utc)
        payload = {"iat": now, "exp": now + dt.timedelta(minutes=5), **claims}
        return jwt.encode(
            payload, _pem_private(key or rsa_key), algorithm="RS256", headers={"kid": kid}
        )

    return _sign


@pytest.fixture
def settings(apple_signing_key, idp_certificate):
    reset_settings_cache()
    return Settings(
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        cookie_secure=False,
        app_base_url="http://localhost:3000",
        jwt_secret=JWT_SECRET,
        internal_api_key="internal-test-key",
        sysadmin_emails=["root@example.com"],
        oauth_google_client_id="google-client-id",
        oauth_google_client_secret="google-client-secret",
        oauth_microsoft_client_id="microsoft-client-id",
        oauth_microsoft_client_secret="microsoft-client-secret",
        oauth_apple_client_id="com.example.web",
        oauth_apple_team_id="TEAM123456",
        oauth_apple_key_id="KEY1234567",
        oauth_apple_private_key=_pem_private(apple_signing_key).decode(),
        saml_sp_entity_id="http://localhost:3000",
        saml_connections={
            "example.com": {
                "entry_point": "https://idp.example.com/sso",
                "idp_cert": idp_certificate["cert_pem"],
                "idp_entity_id": "https://idp.example.com/metadata",
            }
        },
    )


class FakeIdp:
    """Routes ``httpx.MockTransport`` requests to canned IdP answers."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method: str, url: str, status: int = 200, json=None, exc=None):
        self.routes[(method, url)] = (status, json, exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not_found"})
        status, body, exc = self.routes[key]
        if exc is not None:
            raise exc
        return httpx.Response(status, json=body)


@pytest.fixture
def idp():
    return FakeIdp()


@pytest.fixture
def runtime(settings, idp):
    return Runtime(settings, oauth_transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def outbox(runtime):
    """Capture outgoing emails instead of logging them."""
    sent = []

    async def _capture(to, template, data):
        runtime.email.render(template, data)
        sent.append({"to": to, "template": template, **data})
        return True

    runtime.email.send = _capture
    return sent


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime), follow_redirects=False)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
