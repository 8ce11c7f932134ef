"""Bluesky (AT Protocol) client for profile and follow-graph collection."""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional, AsyncGenerator

import httpx
import tenacity

from .config import Settings, settings as default_settings, validate_provider_credentials
from .errors import AuthenticationError, RateLimitExceeded, TransportError
from .throttle import FetchGateway, RateLimiter, RequestQueue


logger = logging.getLogger(__name__)


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


# Session creation is outside the gateway, so it carries its own retry policy
session_retry = tenacity.retry(
    stop=tenacity.stop_after_attempt(3),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=30),
    retry=tenacity.retry_if_exception_type(TransportError),
    before_sleep=_log_retry,
    reraise=True,
)


@dataclass
class Account:
    """Account snapshot as returned by the provider."""
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    followers_count: int = 0
    following_count: int = 0
    posts_count: int = 0
    indexed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        return cls(
            did=data.get("did"),
            handle=data.get("handle"),
            display_name=data.get("display_name"),
            avatar=data.get("avatar"),
            followers_count=data.get("followers_count") or 0,
            following_count=data.get("following_count") or 0,
            posts_count=data.get("posts_count") or 0,
            indexed_at=data.get("indexed_at"),
        )


def format_handle(handle: str) -> str:
    """Bare names are shorthand for *.bsky.social."""
    handle = handle.strip().lstrip("@")
    if "." not in handle and not handle.startswith("did:"):
        return f"{handle}.bsky.social"
    return handle


class BlueskyClient:
    """Bluesky XRPC client with pagination support.

    Every provider call goes through a FetchGateway, so a shared RequestQueue and
    RateLimiter can be injected to throttle all clients in the process together.
    """

    def __init__(
        self,
        config: Settings = None,
        limiter: RateLimiter = None,
        queue: RequestQueue = None,
        transport: httpx.AsyncBaseTransport = None,
        sleep=asyncio.sleep,
    ):
        self.config = config or default_settings
        self.client = httpx.AsyncClient(
            base_url=self.config.bsky_api_url,
            headers={"Accept": "application/json"},
            timeout=self.config.http_timeout_seconds,
            transport=transport,
        )
        self.auth_client = httpx.AsyncClient(
            base_url=self.config.auth_api_url,
            timeout=self.config.http_timeout_seconds,
            transport=transport,
        )
        self.limiter = limiter or RateLimiter.from_settings(self.config)
        self.queue = queue or RequestQueue.from_settings(self.config)
        self.gateway = FetchGateway(
            self._send,
            self.limiter,
            self.queue,
            max_retries=self.config.rate_limit_retries,
            sleep=sleep,
        )
        self._sleep = sleep
        self.access_jwt: Optional[str] = None
        self.refresh_jwt: Optional[str] = None
        self._auth_lock = asyncio.Lock()

    async def close(self):
        """Close the HTTP clients."""
        await self.client.aclose()
        await self.auth_client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def uses_session(self) -> bool:
        return bool(self.config.bsky_identifier or self.config.bsky_app_password)

    def is_authenticated(self) -> bool:
        return self.access_jwt is not None

    async def authenticate(self) -> None:
        """Create an app-password session (com.atproto.server.createSession)."""
        async with self._auth_lock:
            if self.access_jwt:
                return
            validate_provider_credentials(self.config)

            data = await self._create_session()
            self.access_jwt = data["accessJwt"]
            self.refresh_jwt = data.get("refreshJwt")
            self.limiter.reset_errors()
            logger.info("Authenticated with Bluesky as %s", data.get("handle"))

    @session_retry
    async def _create_session(self) -> dict:
        await self.limiter.acquire()
        try:
            response = await self.auth_client.post(
                "/com.atproto.server.createSession",
                json={
                    "identifier": self.config.bsky_identifier,
                    "password": self.config.bsky_app_password,
                },
            )
        except httpx.HTTPError as e:
            raise TransportError(0, f"Session request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitExceeded(
                "Rate limited during authentication",
                retry_after=_retry_after(response),
            )
        data = _json_or_text(response)
        if response.status_code in (400, 401, 403):
            raise AuthenticationError(response.status_code, "Authentication failed", data)
        if response.status_code != 200:
            raise TransportError(response.status_code, str(data), data)
        if not data.get("accessJwt"):
            raise AuthenticationError(response.status_code, "Session response had no access token", data)
        return data

    async def _send(self, endpoint: str, params: dict) -> dict:
        """Single GET against the XRPC API; no retries here."""
        headers = {}
        if self.access_jwt:
            headers["Authorization"] = f"Bearer {self.access_jwt}"

        try:
            response = await self.client.get(f"/{endpoint}", params=params, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(0, f"{endpoint}: {e}") from e

        if response.status_code == 429:
            raise RateLimitExceeded(
                f"Rate limited on {endpoint}",
                retry_after=_retry_after(response),
                response=_json_or_text(response),
            )

        if response.status_code in (401, 403):
            self.access_jwt = None
            data = _json_or_text(response)
            raise AuthenticationError(response.status_code, str(data), data)

        if response.status_code != 200:
            data = _json_or_text(response)
            raise TransportError(response.status_code, str(data), data)

        return response.json()

    async def _request(self, endpoint: str, params: dict = None) -> dict:
        """Make API request through the gateway, return response data."""
        if self.uses_session and not self.access_jwt:
            await self.authenticate()
        return await self.gateway.request(endpoint, params or {})

    async def get_profile(self, handle: str) -> Account:
        """app.bsky.actor.getProfile"""
        data = await self._request(
            "app.bsky.actor.getProfile", {"actor": format_handle(handle)}
        )
        if not data.get("did"):
            raise TransportError(404, f"Failed to fetch profile for handle: {handle}", data)
        return self._normalize_account(data)

    async def resolve_did(self, handle: str) -> str:
        """com.atproto.identity.resolveHandle"""
        data = await self._request(
            "com.atproto.identity.resolveHandle", {"handle": format_handle(handle)}
        )
        if not data.get("did"):
            raise TransportError(404, f"No DID found for handle: {handle}", data)
        return data["did"]

    async def _paginate(
        self,
        endpoint: str,
        list_key: str,
        actor: str,
        max_pages: int = None
    ) -> AsyncGenerator[tuple[list[Account], Optional[str]], None]:
        """
        Walk a cursor-paginated list endpoint.
        Yields: (accounts, cursor_out)
        """
        cursor = None
        page_count = 0

        while True:
            params = {"actor": format_handle(actor), "limit": self.config.page_size}
            if cursor:
                params["cursor"] = cursor

            data = await self._request(endpoint, params)
            accounts = [
                self._normalize_account(raw) for raw in data.get(list_key) or []
            ]
            cursor_out = data.get("cursor")
            page_count += 1

            yield accounts, cursor_out

            if not cursor_out or (max_pages and page_count >= max_pages):
                break

            cursor = cursor_out
            if self.config.page_delay_seconds:
                await self._sleep(self.config.page_delay_seconds)

    async def paginate_followers(self, handle: str, max_pages: int = None):
        async for page in self._paginate(
            "app.bsky.graph.getFollowers", "followers", handle, max_pages
        ):
            yield page

    async def paginate_following(self, handle: str, max_pages: int = None):
        async for page in self._paginate(
            "app.bsky.graph.getFollows", "follows", handle, max_pages
        ):
            yield page

    async def get_followers(self, handle: str, max_pages: int = None) -> list[Account]:
        """All accounts following handle, looping until the cursor is absent."""
        followers: list[Account] = []
        async for accounts, _ in self.paginate_followers(handle, max_pages):
            followers.extend(accounts)
        logger.info("Fetched %d followers for %s", len(followers), handle)
        return followers

    async def get_following(self, handle: str, max_pages: int = None) -> list[Account]:
        """All accounts handle follows, looping until the cursor is absent."""
        following: list[Account] = []
        async for accounts, _ in self.paginate_following(handle, max_pages):
            following.extend(accounts)
        logger.info("Fetched %d following for %s", len(following), handle)
        return following

    def _normalize_account(self, raw: dict) -> Account:
        """Normalize an XRPC profile view."""
        return Account(
            did=raw.get("did"),
            handle=raw.get("handle"),
            display_name=raw.get("displayName") or raw.get("handle"),
            avatar=raw.get("avatar"),
            followers_count=raw.get("followersCount") or 0,
            following_count=raw.get("followsCount") or 0,
            posts_count=raw.get("postsCount") or 0,
            indexed_at=raw.get("indexedAt"),
        )


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _json_or_text(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text}
    return data if isinstance(data, dict) else {"data": data}
