import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

# Environment must be in place before anything initializes settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatgate_test_")
os.environ.setdefault("DATA_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-automation-only-0123456789")
os.environ.setdefault("OIDC_ISSUER", "https://idp.example.test")
os.environ.setdefault("OIDC_CLIENT_ID", "chatgate-test-client")
os.environ.setdefault("OIDC_CLIENT_SECRET", "chatgate-test-client-secret")
os.environ.setdefault("APP_BASE_URL", "http://testserver")

import httpx  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jose import jwk, jwt  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatgate.service.oidc import OIDCClient, code_challenge_s256  # noqa: E402
from chatgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ISSUER = os.environ["OIDC_ISSUER"]
CLIENT_ID = os.environ["OIDC_CLIENT_ID"]
CLIENT_SECRET = os.environ["OIDC_CLIENT_SECRET"]
KEY_ID = "test-signing-key"


class FakeIdentityProvider:
    """In-process OpenID provider served through ``httpx.MockTransport``.

    ``authorize`` plays the user's consent step: it reads the authorization URL
    the app produced and mints a one-time code bound to its nonce and PKCE
    challenge. The token endpoint then issues an RS256 ID token for that code.
    """

    def __init__(self, private_pem: str, public_jwk: dict):
        self.private_pem = private_pem
        self.public_jwk = public_jwk
        self.codes: dict[str, dict] = {}
        self.token_requests: list[dict] = []
        self.claim_overrides: dict = {}
        self.omit_id_token = False
        self.token_error: str | None = None
        self.discovery_hits = 0
        self._counter = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def discovery_document(self) -> dict:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/keys",
            "response_types_supported": ["code"],
            "id_token_signing_alg_values_supported": ["RS256"],
        }

    def authorize(
        self,
        authorization_url: str,
        *,
        subject: str = "u1",
        email: str | None = "a@b.com",
        name: str | None = "A",
        extra_claims: dict | None = None,
    ) -> str:
        params = {k: v[0] for k, v in parse_qs(urlparse(authorization_url).query).items()}
        self._counter += 1
        code = f"code-{self._counter}"
        claims = {"sub": subject}
        if email is not None:
            claims["email"] = email
        if name is not None:
            claims["name"] = name
        claims.update(extra_claims or {})
        self.codes[code] = {
            "claims": claims,
            "nonce": params.get("nonce"),
            "code_challenge": params.get("code_challenge"),
            "redirect_uri": params.get("redirect_uri"),
            "client_id": params.get("client_id"),
        }
        return code

    def sign(self, claims: dict) -> str:
        return jwt.encode(
            claims, self.private_pem, algorithm="RS256", headers={"kid": KEY_ID}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_hits += 1
            return httpx.Response(200, json=self.discovery_document())
        if path == "/keys":
            return httpx.Response(200, json={"keys": [self.public_jwk]})
        if path == "/token" and request.method == "POST":
            return self._token(request)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)
        if self.token_error:
            return httpx.Response(400, json={"error": self.token_error})
        grant = self.codes.pop(form.get("code", ""), None)
        if grant is None or form.get("grant_type") != "authorization_code":
            return httpx.Response(400, json={"error": "invalid_grant"})
        if form.get("client_id") != CLIENT_ID or form.get("client_secret") != CLIENT_SECRET:
            return httpx.Response(401, json={"error": "invalid_client"})
        if form.get("redirect_uri") != grant["redirect_uri"]:
            return httpx.Response(400, json={"error": "invalid_grant"})
        verifier = form.get("code_verifier") or ""
        if code_challenge_s256(verifier) != grant["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant"})

        body = {"access_token": f"access-{form['code']}", "token_type": "Bearer"}
        if not self.omit_id_token:
            now = int(time.time())
            claims = {
                "iss": ISSUER,
                "aud": CLIENT_ID,
                "iat": now,
                "exp": now + 600,
                "nonce": grant["nonce"],
                **grant["claims"],
            }
            claims.update(self.claim_overrides)
            body["id_token"] = self.sign(claims)
        return httpx.Response(200, json=body)


@pytest.fixture(scope="session")
def rsa_keypair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": KEY_ID, "use": "sig"})
    return private_pem, public_jwk


@pytest.fixture
def provider(rsa_keypair):
    private_pem, public_jwk = rsa_keypair
    return FakeIdentityProvider(private_pem, public_jwk)


def make_oidc_client(provider: FakeIdentityProvider, credentials=None) -> OIDCClient:
    runtime = get_runtime()
    return OIDCClient(
        runtime.settings.resolved_oidc_issuer,
        credentials or runtime.client_credentials,
        runtime.settings.resolved_redirect_uri,
        scopes=runtime.settings.oidc_scopes,
        transport=provider.transport,
    )


@pytest.fixture
def runtime_with_provider(provider):
    """The freshly reset runtime wired to the fake provider."""
    runtime = get_runtime()
    oidc = make_oidc_client(provider)
    runtime.oidc = oidc
    runtime.auth.oidc = oidc
    return runtime


@pytest.fixture
def login(provider, runtime_with_provider):
    """Run the browser side of the login handshake; returns the session token."""

    def _login(client, *, subject="u1", email="a@b.com", name="A"):
        response = client.get("/login", follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        code = provider.authorize(location, subject=subject, email=email, name=name)
        state = parse_qs(urlparse(location).query)["state"][0]
        callback = client.get(
            "/callback", params={"code": code, "state": state}, follow_redirects=False
        )
        assert callback.status_code == 302, callback.headers.get("location")
        cookie_name = runtime_with_provider.settings.session_cookie_name
        return callback.cookies[cookie_name]

    return _login


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
