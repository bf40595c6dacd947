"""
Bearer-token verification against a cached, rotating JWKS key set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional, Sequence

import httpx
import jwt

from sandgate.errors import Expired, KeySetUnavailable, Malformed, Unauthorized

logger = logging.getLogger(__name__)

KeyFetcher = Callable[[], Awaitable[dict]]

_FETCH_ERRORS = (
    httpx.HTTPError,
    ValueError,
    jwt.PyJWKSetError,
    jwt.PyJWKError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None
    claims: dict = field(default_factory=dict)
    bypassed: bool = False


class HttpKeyFetcher:
    """Fetches a JWKS document over HTTP."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 5.0):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def __call__(self) -> dict:
        response = await self.client.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()


class KeySetCache:
    """
    TTL cache for verification keys.

    Past the TTL the set is refreshed; when the refresh fails the stale set
    is still trusted for ``grace`` seconds, after which lookups fail with
    KeySetUnavailable. Concurrent refreshes share one fetch.
    """

    def __init__(
        self,
        fetcher: KeyFetcher,
        *,
        ttl: float = 300.0,
        grace: float = 900.0,
        fetch_timeout: float = 5.0,
        min_refresh_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self.ttl = ttl
        self.grace = grace
        self.fetch_timeout = fetch_timeout
        self.min_refresh_interval = min_refresh_interval
        self._clock = clock
        self._keys: Optional[dict[Optional[str], jwt.PyJWK]] = None
        self._fetched_at: Optional[float] = None
        self._last_attempt: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def age(self) -> Optional[float]:
        if self._fetched_at is None:
            return None
        return self._clock() - self._fetched_at

    async def get(self, *, force: bool = False) -> dict[Optional[str], jwt.PyJWK]:
        age = self.age
        if self._keys is not None and age is not None:
            if age < self.ttl and (not force or self._recently_attempted()):
                return self._keys
            if age < self.ttl + self.grace and self._recently_attempted():
                # A refresh just failed; serve stale keys until the next attempt.
                return self._keys

        try:
            return await self._refresh()
        except _FETCH_ERRORS as exc:
            age = self.age
            if self._keys is not None and age is not None and age < self.ttl + self.grace:
                logger.warning(
                    "Key set refresh failed (%s); trusting cached keys aged %.0fs",
                    exc, age,
                )
                return self._keys
            logger.error("Key set refresh failed and no usable cache: %s", exc)
            raise KeySetUnavailable("verification keys unavailable") from exc

    def _recently_attempted(self) -> bool:
        if self._last_attempt is None:
            return False
        return self._clock() - self._last_attempt < self.min_refresh_interval

    async def _refresh(self) -> dict[Optional[str], jwt.PyJWK]:
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._fetch())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        self._inflight = None
        if not task.cancelled():
            task.exception()

    async def _fetch(self) -> dict[Optional[str], jwt.PyJWK]:
        self._last_attempt = self._clock()
        payload = await asyncio.wait_for(self._fetcher(), self.fetch_timeout)
        keyset = jwt.PyJWKSet.from_dict(payload)
        keys = {key.key_id: key for key in keyset.keys}
        self._keys = keys
        self._fetched_at = self._clock()
        logger.info("Loaded %d verification key(s)", len(keys))
        return keys


class AccessGate:
    """Verifies bearer tokens and extracts them from inbound requests."""

    def __init__(
        self,
        keys: Optional[KeySetCache],
        *,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        algorithms: Sequence[str] = ("RS256",),
        leeway: int = 0,
        token_header: str = "cf-access-jwt-assertion",
        token_cookie: Optional[str] = "CF_Authorization",
        bypass: bool = False,
    ):
        if keys is None and not bypass:
            raise ValueError("a key set is required unless verification is bypassed")
        self.keys = keys
        self.audience = audience
        self.issuer = issuer
        self.algorithms = list(algorithms)
        self.leeway = leeway
        self.token_header = token_header.lower()
        self.token_cookie = token_cookie
        self.bypass = bypass

    def extract_token(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]:
        token = headers.get(self.token_header)
        if token:
            return token.strip()
        authorization = headers.get("authorization") or ""
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        if self.token_cookie:
            token = cookies.get(self.token_cookie)
            if token:
                return token
        return None

    def credential_headers(self, headers: Mapping[str, str]) -> set[str]:
        """Header names carrying the gateway credential on this request."""
        names = {self.token_header}
        authorization = headers.get("authorization") or ""
        if authorization.lower().startswith("bearer "):
            names.add("authorization")
        return names

    async def verify(self, token: Optional[str]) -> Identity:
        if self.bypass:
            return Identity(subject="dev-bypass", bypassed=True)
        if not token:
            raise Unauthorized("missing bearer token")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise Malformed(f"unparseable token: {exc}") from exc
        if header.get("alg") not in self.algorithms:
            raise Unauthorized(f"algorithm {header.get('alg')!r} not allowed")

        kid = header.get("kid")
        keys = await self.keys.get()
        key = _select_key(keys, kid)
        if key is None:
            # Possibly a rotated key; refresh once before rejecting.
            keys = await self.keys.get(force=True)
            key = _select_key(keys, kid)
        if key is None:
            raise Unauthorized(f"unknown signing key {kid!r}")

        try:
            claims = jwt.decode(
                token,
                key.key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Expired("token expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise Unauthorized("invalid signature") from exc
        except jwt.DecodeError as exc:
            raise Malformed(f"undecodable token: {exc}") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized(f"rejected token: {exc}") from exc

        return Identity(
            subject=str(claims.get("sub") or claims.get("email") or "unknown"),
            email=claims.get("email"),
            claims=claims,
        )


def _select_key(
    keys: Mapping[Optional[str], jwt.PyJWK], kid: Optional[str]
) -> Optional[jwt.PyJWK]:
    if kid is not None:
        return keys.get(kid)
    if len(keys) == 1:
        return next(iter(keys.values()))
    return None
