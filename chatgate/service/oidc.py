from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from chatgate.logging import get_logger
from chatgate.service.errors import TokenExchangeError

logger = get_logger(__name__)

DEFAULT_SCOPES = "openid profile email offline_access"
ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: Optional[str]


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: Optional[str] = None

    @classmethod
    def from_discovery(cls, document: dict[str, Any]) -> "ProviderMetadata":
        try:
            return cls(
                issuer=document["issuer"],
                authorization_endpoint=document["authorization_endpoint"],
                token_endpoint=document["token_endpoint"],
                jwks_uri=document["jwks_uri"],
                end_session_endpoint=document.get("end_session_endpoint"),
            )
        except KeyError as exc:
            raise TokenExchangeError(f"discovery document missing {exc.args[0]}") from exc


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    nonce: str
    code_verifier: str
    redirect_uri: str


@dataclass(frozen=True)
class IdentityClaims:
    subject: str
    email: str
    display_name: str
    access_token: Optional[str]
    raw_claims: dict[str, Any]


def generate_code_verifier() -> str:
    # 64 random bytes -> 86 url-safe chars, inside the 43..128 range
    return secrets.token_urlsafe(64)


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class OIDCClient:
    """Authorization Code + PKCE client for a single OpenID Connect provider.

    Discovery metadata and the signing keys are fetched once per process and
    reused; ``reset`` drops them along with the cached credentials.
    """

    def __init__(
        self,
        issuer: Optional[str],
        credentials: Callable[[], Optional[ClientCredentials]],
        redirect_uri: str,
        *,
        scopes: str = DEFAULT_SCOPES,
        timeout: float = 30.0,
        leeway_seconds: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.issuer = issuer.rstrip("/") if issuer else None
        self._credentials_source = credentials
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.timeout = timeout
        self.leeway_seconds = leeway_seconds
        self._transport = transport
        self._metadata: Optional[ProviderMetadata] = None
        self._jwks: Optional[dict[str, Any]] = None
        self._credentials: Optional[ClientCredentials] = None
        self._discovery_lock = asyncio.Lock()
        self.logger = logger

    def reset(self) -> None:
        self._metadata = None
        self._jwks = None
        self._credentials = None
        self._discovery_lock = asyncio.Lock()

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def _client_credentials(self) -> ClientCredentials:
        if self._credentials is None:
            credentials = self._credentials_source()
            if not credentials or not credentials.client_id:
                self.logger.error("oidc_client_not_configured")
                raise TokenExchangeError("identity provider client is not configured")
            self._credentials = credentials
        return self._credentials

    async def _fetch_json(self, client: httpx.AsyncClient, url: str) -> dict[str, Any]:
        response = await client.get(url, headers={"Accept": "application/json"})
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise TokenExchangeError(f"unexpected response from {url}")
        return data

    async def discover(self) -> ProviderMetadata:
        if self._metadata is not None:
            return self._metadata
        if not self.issuer:
            self.logger.error("oidc_issuer_not_configured")
            raise TokenExchangeError("identity provider issuer is not configured")
        async with self._discovery_lock:
            if self._metadata is not None:
                return self._metadata
            url = f"{self.issuer}/.well-known/openid-configuration"
            try:
                async with self._http_client() as client:
                    document = await self._fetch_json(client, url)
            except (httpx.HTTPError, ValueError) as exc:
                self.logger.error("oidc_discovery_failed", issuer=self.issuer, error=str(exc))
                raise TokenExchangeError("identity provider discovery failed") from exc
            metadata = ProviderMetadata.from_discovery(document)
            if metadata.issuer.rstrip("/") != self.issuer:
                self.logger.error(
                    "oidc_issuer_mismatch", expected=self.issuer, actual=metadata.issuer
                )
                raise TokenExchangeError("discovery document issuer mismatch")
            self._metadata = metadata
            self.logger.info("oidc_discovery_complete", issuer=metadata.issuer)
            return metadata

    async def _signing_keys(self, client: httpx.AsyncClient, metadata: ProviderMetadata) -> dict[str, Any]:
        if self._jwks is None:
            jwks = await self._fetch_json(client, metadata.jwks_uri)
            if not isinstance(jwks.get("keys"), list):
                raise TokenExchangeError("provider JWKS has no keys")
            self._jwks = jwks
        return self._jwks

    async def build_authorization_request(self) -> AuthorizationRequest:
        metadata = await self.discover()
        credentials = self._client_credentials()
        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        code_verifier = generate_code_verifier()
        params = {
            "client_id": credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge_s256(code_verifier),
            "code_challenge_method": "S256",
            "response_mode": "query",
        }
        return AuthorizationRequest(
            url=f"{metadata.authorization_endpoint}?{urlencode(params)}",
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            redirect_uri=self.redirect_uri,
        )

    async def exchange_code(
        self,
        code: str,
        *,
        code_verifier: str,
        redirect_uri: str,
        expected_nonce: str,
        state: str,
        expected_state: str,
    ) -> IdentityClaims:
        """Redeem ``code`` and return the validated identity.

        Raises TokenExchangeError for transport failures, provider-reported
        errors, a missing or invalid ID token, and nonce or state mismatches.
        """
        if not hmac.compare_digest(state.encode(), expected_state.encode()):
            self.logger.warning("oidc_state_mismatch")
            raise TokenExchangeError("state mismatch", reason="invalid_state")

        metadata = await self.discover()
        credentials = self._client_credentials()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "client_id": credentials.client_id,
        }
        # client_secret_post
        if credentials.client_secret:
            form["client_secret"] = credentials.client_secret

        try:
            async with self._http_client() as client:
                response = await client.post(
                    metadata.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
                try:
                    token_result = response.json()
                except ValueError:
                    token_result = None
                if response.status_code >= 400 or not isinstance(token_result, dict):
                    provider_error = (
                        token_result.get("error") if isinstance(token_result, dict) else None
                    )
                    self.logger.error(
                        "oidc_token_exchange_rejected",
                        status_code=response.status_code,
                        provider_error=provider_error,
                    )
                    raise TokenExchangeError("token endpoint rejected the code")
                if token_result.get("error"):
                    self.logger.error(
                        "oidc_token_exchange_rejected", provider_error=token_result["error"]
                    )
                    raise TokenExchangeError("token endpoint returned an error")
                id_token = token_result.get("id_token")
                if not id_token:
                    self.logger.error("oidc_no_id_token")
                    raise TokenExchangeError("no id_token in token response", reason="no_id_token")
                jwks = await self._signing_keys(client, metadata)
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oidc_token_exchange_http_error", error=str(exc))
            raise TokenExchangeError("token exchange failed") from exc

        access_token = token_result.get("access_token")
        claims = self._validate_id_token(
            id_token, jwks, metadata, credentials, access_token
        )
        nonce = claims.get("nonce")
        if not isinstance(nonce, str) or not hmac.compare_digest(
            nonce.encode(), expected_nonce.encode()
        ):
            self.logger.warning("oidc_nonce_mismatch", subject=claims.get("sub"))
            raise TokenExchangeError("nonce mismatch", reason="invalid_nonce")

        subject = claims.get("sub")
        if not subject:
            raise TokenExchangeError("id_token has no subject")
        email = claims.get("email") or claims.get("preferred_username") or ""
        display_name = claims.get("name") or claims.get("given_name") or email
        self.logger.info("oidc_exchange_success", subject=subject)
        return IdentityClaims(
            subject=str(subject),
            email=str(email),
            display_name=str(display_name),
            access_token=access_token,
            raw_claims=claims,
        )

    def _validate_id_token(
        self,
        id_token: str,
        jwks: dict[str, Any],
        metadata: ProviderMetadata,
        credentials: ClientCredentials,
        access_token: Optional[str],
    ) -> dict[str, Any]:
        try:
            return jwt.decode(
                id_token,
                jwks,
                algorithms=ID_TOKEN_ALGORITHMS,
                audience=credentials.client_id,
                issuer=metadata.issuer,
                access_token=access_token,
                options={"leeway": self.leeway_seconds},
            )
        except ExpiredSignatureError as exc:
            self.logger.warning("oidc_id_token_expired")
            raise TokenExchangeError("id_token expired") from exc
        except JWTClaimsError as exc:
            self.logger.warning("oidc_id_token_claims_invalid", error=str(exc))
            raise TokenExchangeError("id_token claims invalid") from exc
        except JWTError as exc:
            self.logger.warning("oidc_id_token_invalid", error=str(exc))
            raise TokenExchangeError("id_token signature invalid") from exc
