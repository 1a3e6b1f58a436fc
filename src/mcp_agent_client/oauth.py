from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import secrets
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from pydantic import BaseModel, Field

from .errors import OAuthError
from .models import StoredTokens
from .protocol import JSONRPC_VERSION, PING_METHOD, parse_www_authenticate

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_ID = "mcp-agent-client"
DEFAULT_REDIRECT_URI = "mcp-agent-client://oauth/callback"

STATE_TTL = timedelta(minutes=10)
EXPIRY_SKEW = timedelta(seconds=30)

_VERIFIER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_VERIFIER_LENGTH = 128


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str)]


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 protected resource metadata (RFC 9728)."""

    resource: str = ""
    authorization_servers: list[str] = Field(default_factory=list)
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = None
    resource_documentation: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ProtectedResourceMetadata:
        resource = payload.get("resource")
        documentation = payload.get("resource_documentation")
        return cls(
            resource=resource if isinstance(resource, str) else "",
            authorization_servers=_string_list(payload.get("authorization_servers")) or [],
            scopes_supported=_string_list(payload.get("scopes_supported")),
            bearer_methods_supported=_string_list(payload.get("bearer_methods_supported")),
            resource_documentation=documentation if isinstance(documentation, str) else None,
        )


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 authorization server metadata (RFC 8414 / OpenID discovery)."""

    issuer: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None

    @property
    def supports_pkce(self) -> bool:
        return "S256" in (self.code_challenge_methods_supported or [])

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AuthorizationServerMetadata:
        def _str(key: str) -> str:
            value = payload.get(key)
            return value if isinstance(value, str) else ""

        registration = payload.get("registration_endpoint")
        return cls(
            issuer=_str("issuer"),
            authorization_endpoint=_str("authorization_endpoint"),
            token_endpoint=_str("token_endpoint"),
            registration_endpoint=registration if isinstance(registration, str) else None,
            scopes_supported=_string_list(payload.get("scopes_supported")),
            response_types_supported=_string_list(payload.get("response_types_supported")),
            grant_types_supported=_string_list(payload.get("grant_types_supported")),
            code_challenge_methods_supported=_string_list(
                payload.get("code_challenge_methods_supported")
            ),
        )


class OAuthTokens(BaseModel):
    """Access/refresh token pair with an absolute expiry."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str | None = None
    scope: str | None = None

    @property
    def is_expired(self) -> bool:
        """True from 30 seconds before the real expiry onwards."""
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return _utcnow() >= expires_at - EXPIRY_SKEW

    @classmethod
    def from_response(
        cls,
        data: Mapping[str, Any],
        *,
        previous_refresh_token: str | None = None,
    ) -> OAuthTokens:
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise OAuthError("Token response missing access_token", code="invalid_response")

        expires_at: datetime | None = None
        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = _utcnow() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric expires_in in token response")

        refresh_token = data.get("refresh_token")
        token_type = data.get("token_type")
        scope = data.get("scope")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token
            else previous_refresh_token,
            expires_at=expires_at,
            token_type=token_type if isinstance(token_type, str) else None,
            scope=scope if isinstance(scope, str) else None,
        )

    @classmethod
    def from_stored(cls, stored: StoredTokens) -> OAuthTokens:
        return cls(**stored.model_dump())

    def to_stored(self) -> StoredTokens:
        return StoredTokens(**self.model_dump())


@dataclass(slots=True)
class OAuthState:
    """Pending authorization attempt, keyed by its `state` value."""

    code_verifier: str
    state: str
    resource_url: str
    auth_server_url: str
    client_id: str
    redirect_uri: str
    scope: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_expired(self) -> bool:
        return _utcnow() > self.created_at + STATE_TTL


@dataclass(slots=True)
class AuthCheckResult:
    requires_auth: bool
    resource_metadata_url: str | None = None
    scope: str | None = None
    params: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CallbackResult:
    """Query parameters carried by an OAuth redirect back to the client."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.code is not None and self.state is not None


def generate_code_verifier() -> str:
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(_VERIFIER_LENGTH))


def code_challenge(verifier: str) -> str:
    """Return the S256 PKCE challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def _origin(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    path = parts.path if parts.path not in ("", "/") else ""
    return f"{parts.scheme}://{parts.netloc}", path


def protected_resource_metadata_urls(
    server_url: str,
    metadata_url: str | None = None,
) -> list[str]:
    """Candidate RFC 9728 metadata URLs in the order they are tried."""
    origin, path = _origin(server_url)
    urls: list[str] = []
    if metadata_url:
        urls.append(metadata_url)
    if path:
        urls.append(f"{origin}/.well-known/oauth-protected-resource{path}")
    urls.append(f"{origin}/.well-known/oauth-protected-resource")
    return urls


def authorization_server_metadata_urls(auth_server_url: str) -> list[str]:
    """Candidate RFC 8414 / OpenID discovery URLs in the order they are tried."""
    origin, path = _origin(auth_server_url)
    if path:
        return [
            f"{origin}/.well-known/oauth-authorization-server{path}",
            f"{origin}/.well-known/openid-configuration{path}",
            f"{auth_server_url.rstrip('/')}/.well-known/openid-configuration",
        ]
    return [
        f"{origin}/.well-known/oauth-authorization-server",
        f"{origin}/.well-known/openid-configuration",
    ]


def _parse_token_response(text: str) -> dict[str, Any]:
    """Parse a token endpoint body as JSON, falling back to form encoding."""
    try:
        decoded = json.loads(text)
    except ValueError:
        return dict(parse_qsl(text, keep_blank_values=True))
    return decoded if isinstance(decoded, dict) else {}


class OAuthClient:
    """OAuth 2.1 authorization-code + PKCE client for MCP servers.

    Metadata caches and pending authorization states belong to the instance,
    so separate clients never observe each other's flows.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        client_id: str = DEFAULT_CLIENT_ID,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        timeout: float = 30.0,
    ) -> None:
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self._resource_cache: dict[str, ProtectedResourceMetadata] = {}
        self._auth_server_cache: dict[str, AuthorizationServerMetadata] = {}
        self._pending_states: dict[str, OAuthState] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def check_auth_required(self, server_url: str) -> AuthCheckResult:
        """Send an unauthenticated `ping` and report whether the server answers 401."""
        try:
            response = await self._client.post(
                server_url,
                json={"jsonrpc": JSONRPC_VERSION, "id": 1, "method": PING_METHOD},
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthError(f"Failed to reach {server_url}: {exc}") from exc

        if response.status_code != 401:
            return AuthCheckResult(requires_auth=False)
        params = parse_www_authenticate(response.headers.get("www-authenticate"))
        return AuthCheckResult(
            requires_auth=True,
            resource_metadata_url=params.get("resource_metadata"),
            scope=params.get("scope"),
            params=params,
        )

    async def discover_protected_resource_metadata(
        self,
        server_url: str,
        *,
        metadata_url: str | None = None,
    ) -> ProtectedResourceMetadata:
        cached = self._resource_cache.get(server_url)
        if cached is not None:
            return cached

        for url in protected_resource_metadata_urls(server_url, metadata_url):
            payload = await self._fetch_metadata(url)
            if payload is None:
                continue
            metadata = ProtectedResourceMetadata.from_payload(payload)
            self._resource_cache[server_url] = metadata
            return metadata

        raise OAuthError(f"Could not discover protected resource metadata for {server_url}")

    async def discover_auth_server_metadata(self, auth_server_url: str) -> AuthorizationServerMetadata:
        """Fetch authorization server metadata; refuses servers without S256 PKCE."""
        cached = self._auth_server_cache.get(auth_server_url)
        if cached is not None:
            return cached

        for url in authorization_server_metadata_urls(auth_server_url):
            payload = await self._fetch_metadata(url)
            if payload is None:
                continue
            metadata = AuthorizationServerMetadata.from_payload(payload)
            if not metadata.supports_pkce:
                logger.warning(
                    "Authorization server %s does not advertise S256 PKCE support",
                    auth_server_url,
                )
                raise OAuthError(
                    "Authorization server does not support PKCE (S256)",
                    code="pkce_not_supported",
                )
            self._auth_server_cache[auth_server_url] = metadata
            return metadata

        raise OAuthError(f"Could not discover authorization server metadata for {auth_server_url}")

    async def build_authorization_url(
        self,
        server_url: str,
        *,
        client_id: str | None = None,
        scope: str | None = None,
        resource_metadata_url: str | None = None,
    ) -> str:
        """Start an authorization attempt and return the URL to open."""
        resource = await self.discover_protected_resource_metadata(
            server_url,
            metadata_url=resource_metadata_url,
        )
        if not resource.authorization_servers:
            raise OAuthError(f"No authorization servers found for {server_url}")
        auth_server_url = resource.authorization_servers[0]
        auth_server = await self.discover_auth_server_metadata(auth_server_url)

        verifier = generate_code_verifier()
        state = generate_state()
        requested_scope = scope
        if requested_scope is None and resource.scopes_supported:
            requested_scope = " ".join(resource.scopes_supported)
        if requested_scope is None and auth_server.scopes_supported:
            requested_scope = " ".join(auth_server.scopes_supported)
        effective_client_id = client_id or self.client_id

        self._pending_states[state] = OAuthState(
            code_verifier=verifier,
            state=state,
            resource_url=server_url,
            auth_server_url=auth_server_url,
            client_id=effective_client_id,
            redirect_uri=self.redirect_uri,
            scope=requested_scope,
        )

        query: dict[str, str] = {
            "response_type": "code",
            "client_id": effective_client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        if requested_scope:
            query["scope"] = requested_scope

        endpoint = urlsplit(auth_server.authorization_endpoint)
        existing = endpoint.query + "&" if endpoint.query else ""
        return urlunsplit(endpoint._replace(query=existing + urlencode(query)))

    async def exchange_code_for_tokens(
        self,
        code: str,
        state: str,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> OAuthTokens:
        """Trade an authorization code for tokens; the state is consumed either way."""
        pending = self._pending_states.pop(state, None)
        if pending is None:
            raise OAuthError("Unknown or expired state parameter")
        if pending.is_expired:
            raise OAuthError("Authorization state has expired")

        auth_server = await self.discover_auth_server_metadata(pending.auth_server_url)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": client_id or pending.client_id,
            "code_verifier": pending.code_verifier,
        }
        if client_secret is not None:
            form["client_secret"] = client_secret
        tokens = await self._token_request(auth_server.token_endpoint, form, action="Token exchange")
        logger.info("Obtained OAuth tokens for %s", pending.resource_url)
        return tokens

    async def refresh_tokens(
        self,
        server_url: str,
        refresh_token: str,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> OAuthTokens:
        """Refresh tokens; a response without `refresh_token` keeps the old one."""
        resource = await self.discover_protected_resource_metadata(server_url)
        if not resource.authorization_servers:
            raise OAuthError("No authorization servers found")
        auth_server = await self.discover_auth_server_metadata(resource.authorization_servers[0])

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id or self.client_id,
        }
        if client_secret is not None:
            form["client_secret"] = client_secret
        tokens = await self._token_request(
            auth_server.token_endpoint,
            form,
            action="Token refresh",
            previous_refresh_token=refresh_token,
        )
        logger.info("Refreshed OAuth tokens for %s", server_url)
        return tokens

    def parse_callback(self, url: str) -> CallbackResult:
        """Extract `code`/`state` or `error` from a redirect URL."""
        query = parse_qs(urlsplit(url).query)

        def _first(key: str) -> str | None:
            values = query.get(key)
            return values[0] if values else None

        return CallbackResult(
            code=_first("code"),
            state=_first("state"),
            error=_first("error"),
            error_description=_first("error_description"),
        )

    def get_pending_state(self, state: str) -> OAuthState | None:
        return self._pending_states.get(state)

    def cleanup_expired_states(self) -> int:
        expired = [key for key, value in self._pending_states.items() if value.is_expired]
        for key in expired:
            del self._pending_states[key]
        return len(expired)

    def clear_cache(self) -> None:
        self._resource_cache.clear()
        self._auth_server_cache.clear()

    async def _fetch_metadata(self, url: str) -> dict[str, Any] | None:
        try:
            response = await self._client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            logger.debug("Metadata request to %s failed: %s", url, exc)
            return None
        if response.status_code != 200:
            logger.debug("Metadata request to %s returned HTTP %s", url, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Metadata document at %s is not valid JSON", url)
            return None
        return payload if isinstance(payload, dict) else None

    async def _token_request(
        self,
        endpoint: str,
        form: Mapping[str, str],
        *,
        action: str,
        previous_refresh_token: str | None = None,
    ) -> OAuthTokens:
        try:
            response = await self._client.post(
                endpoint,
                data=dict(form),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthError(f"{action} failed: {exc}") from exc

        raw = response.text
        data = _parse_token_response(raw)
        if response.status_code != 200:
            error = data.get("error")
            description = data.get("error_description")
            raise OAuthError(
                f"{action} failed: {description or error or 'Unknown error'}. Raw response: {raw}",
                code=error if isinstance(error, str) else None,
                http_status=response.status_code,
            )
        try:
            return OAuthTokens.from_response(data, previous_refresh_token=previous_refresh_token)
        except OAuthError as exc:
            raise OAuthError(
                f"{action} response missing access_token. Raw response: {raw}",
                code=exc.code,
                http_status=response.status_code,
            ) from exc


TokenLoader = Callable[[str], Awaitable[OAuthTokens | None]]
TokenSaver = Callable[[str, OAuthTokens | None], Awaitable[None]]


class OAuthCredentialProvider:
    """Bearer-token source for one server connection.

    Tokens are loaded lazily on first use and refreshed transparently once
    expired. All access is serialized, so concurrent requests on the same
    connection trigger at most one refresh. A failed refresh clears and
    persists `None`, leaving the connection unauthenticated.
    """

    def __init__(
        self,
        server_url: str,
        oauth: OAuthClient,
        *,
        load_tokens: TokenLoader,
        save_tokens: TokenSaver,
        client_id: str | None = None,
        client_secret: str | None = None,
        initial_tokens: OAuthTokens | None = None,
    ) -> None:
        self.server_url = server_url
        self.client_id = client_id
        self.client_secret = client_secret
        self._oauth = oauth
        self._load_tokens = load_tokens
        self._save_tokens = save_tokens
        self._tokens = initial_tokens
        self._loaded = initial_tokens is not None
        self._lock = asyncio.Lock()

    @property
    def current_tokens(self) -> OAuthTokens | None:
        return self._tokens

    async def tokens(self) -> OAuthTokens | None:
        async with self._lock:
            if not self._loaded:
                self._tokens = await self._load_tokens(self.server_url)
                self._loaded = True

            tokens = self._tokens
            if tokens is None:
                return None
            if not tokens.is_expired:
                return tokens
            if tokens.refresh_token is None:
                return tokens

            try:
                refreshed = await self._oauth.refresh_tokens(
                    self.server_url,
                    tokens.refresh_token,
                    client_id=self.client_id,
                    client_secret=self.client_secret,
                )
            except OAuthError as exc:
                logger.warning("Token refresh for %s failed: %s", self.server_url, exc)
                self._tokens = None
                await self._save_tokens(self.server_url, None)
                return None

            self._tokens = refreshed
            await self._save_tokens(self.server_url, refreshed)
            return refreshed

    async def access_token(self) -> str | None:
        tokens = await self.tokens()
        return tokens.access_token if tokens is not None else None

    async def update_tokens(self, tokens: OAuthTokens) -> None:
        async with self._lock:
            self._tokens = tokens
            self._loaded = True
            await self._save_tokens(self.server_url, tokens)

    async def clear_tokens(self) -> None:
        async with self._lock:
            self._tokens = None
            self._loaded = True
            await self._save_tokens(self.server_url, None)

    async def authorization_url(self, *, scope: str | None = None) -> str:
        return await self._oauth.build_authorization_url(
            self.server_url,
            client_id=self.client_id,
            scope=scope,
        )
