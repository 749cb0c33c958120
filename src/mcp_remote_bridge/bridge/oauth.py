"""OAuth client helpers for MCP servers.

Implements the client side of the MCP authorization flow:
- WWW-Authenticate challenge parsing
- Protected resource and authorization server metadata discovery
- Dynamic client registration
- PKCE (S256) and state generation
- Authorization code exchange and refresh
"""

import base64
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode, urlparse

import httpx

from .errors import ExchangeError
from .models import CallbackSession, ChallengeInfo, Credential

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-remote-bridge"
DEFAULT_HTTP_TIMEOUT = 30.0

_AUTH_PARAM = re.compile(r'(\w+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


def parse_www_authenticate(header: str | None) -> dict[str, str]:
    """Parse the parameters of a ``Bearer`` WWW-Authenticate header.

    Args:
        header: Raw header value, e.g. ``Bearer resource_metadata="https://..."``

    Returns:
        Lower-cased parameter names mapped to values; empty if not Bearer
    """
    if not header:
        return {}
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return {}
    return {
        name.lower(): quoted if quoted else bare
        for name, quoted, bare in _AUTH_PARAM.findall(params)
    }


def challenge_from_response(response: httpx.Response) -> ChallengeInfo:
    """Build a ChallengeInfo from a 401/403 response."""
    params = parse_www_authenticate(response.headers.get("WWW-Authenticate"))
    return ChallengeInfo(
        url=str(response.request.url),
        status_code=response.status_code,
        resource_metadata_url=params.get("resource_metadata"),
        scope=params.get("scope"),
        error=params.get("error"),
    )


def is_challenge(response: httpx.Response) -> bool:
    """401 always challenges; 403 only when it carries WWW-Authenticate."""
    if response.status_code == 401:
        return True
    return response.status_code == 403 and "WWW-Authenticate" in response.headers


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code verifier and its S256 challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = _b64url(secrets.token_bytes(32))
    code_challenge = _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())
    return code_verifier, code_challenge


def code_challenge_for(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _well_known_urls(base: str, suffix: str) -> list[str]:
    """Candidate well-known URLs for ``base``, path-aware form first."""
    parsed = urlparse(base)
    origin = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")
    urls = []
    if path:
        urls.append(f"{origin}/.well-known/{suffix}{path}")
    urls.append(f"{origin}/.well-known/{suffix}")
    return urls


@dataclass
class AuthServerMetadata:
    """Endpoints of the authorization server protecting the MCP server."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    scopes_supported: list[str] = field(default_factory=list)
    resource: str | None = None

    @classmethod
    def defaults_for(cls, server_url: str) -> "AuthServerMetadata":
        """Fallback endpoints when the server publishes no metadata."""
        origin = _origin(server_url)
        return cls(
            issuer=origin,
            authorization_endpoint=f"{origin}/authorize",
            token_endpoint=f"{origin}/token",
            registration_endpoint=f"{origin}/register",
        )


class OAuthClient:
    """Talks to the authorization server on behalf of one bridge run.

    Discovery and client registration results are cached so that refreshes
    and repeated challenges reuse them.
    """

    def __init__(
        self,
        server_url: str,
        client_id: str | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.server_url = server_url
        self.client_id = client_id
        self.timeout = timeout
        self.metadata: AuthServerMetadata | None = None
        self._client = http_client
        self._owns_client = http_client is None
        self._registered_for: str | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def _get_json(self, url: str) -> dict[str, Any] | None:
        client = await self._ensure_client()
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.debug(f"Metadata fetch failed for {url}: {e}")
            return None
        if response.status_code != 200:
            logger.debug(f"Metadata fetch {url} returned {response.status_code}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Invalid JSON in metadata document {url}")
            return None

    async def discover(self, challenge: ChallengeInfo | None = None) -> AuthServerMetadata:
        """Resolve authorization server metadata for the MCP server.

        Order: resource_metadata from the challenge (or well-known protected
        resource document), then the authorization server's own metadata,
        then default endpoints on the server origin.
        """
        if self.metadata is not None:
            return self.metadata

        resource = None
        auth_server = _origin(self.server_url)

        resource_urls = []
        if challenge and challenge.resource_metadata_url:
            resource_urls.append(challenge.resource_metadata_url)
        resource_urls.extend(_well_known_urls(self.server_url, "oauth-protected-resource"))

        for url in resource_urls:
            document = await self._get_json(url)
            if document:
                resource = document.get("resource")
                servers = document.get("authorization_servers") or []
                if servers:
                    auth_server = servers[0]
                break

        metadata = None
        candidates = _well_known_urls(auth_server, "oauth-authorization-server")
        candidates += _well_known_urls(auth_server, "openid-configuration")
        for url in candidates:
            document = await self._get_json(url)
            if document and "authorization_endpoint" in document and "token_endpoint" in document:
                metadata = AuthServerMetadata(
                    issuer=document.get("issuer", auth_server),
                    authorization_endpoint=document["authorization_endpoint"],
                    token_endpoint=document["token_endpoint"],
                    registration_endpoint=document.get("registration_endpoint"),
                    scopes_supported=document.get("scopes_supported") or [],
                )
                break

        if metadata is None:
            logger.info(f"No authorization server metadata found, using defaults on {auth_server}")
            metadata = AuthServerMetadata.defaults_for(auth_server)

        metadata.resource = resource
        self.metadata = metadata
        logger.info(f"Authorization server: {metadata.issuer}")
        return metadata

    async def register(self, metadata: AuthServerMetadata, redirect_uri: str) -> str:
        """Obtain a client_id, registering dynamically when needed.

        Raises:
            ExchangeError: If no client_id is configured and registration fails
        """
        if self.client_id and (self._registered_for in (None, redirect_uri)):
            return self.client_id
        if not metadata.registration_endpoint:
            raise ExchangeError(
                message="Authorization server has no registration endpoint "
                "and no client id is configured"
            )

        client = await self._ensure_client()
        body = {
            "client_name": CLIENT_NAME,
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }
        try:
            response = await client.post(metadata.registration_endpoint, json=body)
        except httpx.HTTPError as e:
            raise ExchangeError(message=f"Client registration failed: {e}") from e
        if response.status_code not in (200, 201):
            raise ExchangeError(
                message=f"Client registration failed: HTTP {response.status_code}",
                data={"http_status": response.status_code, "original_message": response.text},
            )

        try:
            client_id = response.json()["client_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise ExchangeError(
                message=f"Invalid client registration response: {e}",
                data={"http_status": response.status_code, "original_message": response.text},
            ) from e
        if not isinstance(client_id, str) or not client_id:
            raise ExchangeError(message="Client registration returned no client_id")

        self.client_id = client_id
        self._registered_for = redirect_uri
        logger.info("Registered OAuth client")
        return self.client_id

    def build_authorize_url(
        self,
        metadata: AuthServerMetadata,
        client_id: str,
        session: CallbackSession,
        scope: str | None = None,
    ) -> str:
        """Authorization endpoint URL the user must visit."""
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": session.redirect_uri,
            "state": session.state,
            "code_challenge": code_challenge_for(session.code_verifier),
            "code_challenge_method": "S256",
        }
        if scope:
            params["scope"] = scope
        if metadata.resource:
            params["resource"] = metadata.resource
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

    async def _token_request(self, form: dict[str, str]) -> Credential:
        if self.metadata is None:
            raise ExchangeError(message="Authorization server metadata not discovered")
        if self.metadata.resource:
            form["resource"] = self.metadata.resource

        client = await self._ensure_client()
        try:
            response = await client.post(
                self.metadata.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ExchangeError(message=f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise ExchangeError(
                message=f"Token request failed: HTTP {response.status_code}",
                data={"http_status": response.status_code, "original_message": response.text},
            )
        try:
            return Credential.from_token_response(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ExchangeError(message=f"Invalid token response: {e}") from e

    async def exchange_code(self, session: CallbackSession, code: str) -> Credential:
        """Exchange an authorization code for a Credential using the session's verifier."""
        if not self.client_id:
            raise ExchangeError(message="No OAuth client registered")
        credential = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": session.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": session.code_verifier,
            }
        )
        logger.info("Authorization code exchanged for access token")
        return credential

    async def refresh(self, credential: Credential) -> Credential:
        """Use the refresh token to obtain a new Credential.

        Raises:
            ExchangeError: If there is no refresh token or the server rejects it
        """
        if not credential.refresh_token:
            raise ExchangeError(message="No refresh token available")
        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        if self.client_id:
            form["client_id"] = self.client_id
        refreshed = await self._token_request(form)
        if refreshed.refresh_token is None:
            refreshed.refresh_token = credential.refresh_token
        logger.info("Access token refreshed")
        return refreshed

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

