from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp
from loguru import logger

from runctl.errors import AuthError

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    """Non-2xx answer, or ``status=0`` when no answer arrived at all."""

    status: int
    body: str

    def __str__(self) -> str:
        if self.status == 0:
            return f"HTTP transport error: {self.body}"
        return f"HTTP {self.status}: {self.body}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    async def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        pass


class GoogleAuth:
    """Ambient Google credentials: a key file if given, else ADC.

    ADC covers ``gcloud auth application-default login`` on a laptop, the
    metadata server on GCP compute, and ``GOOGLE_APPLICATION_CREDENTIALS``.
    google-auth is synchronous, so loading and refreshing run in the default
    executor.
    """

    def __init__(
        self,
        credentials_file: str | None = None,
        *,
        scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,),
    ) -> None:
        self._credentials_file = credentials_file
        self._scopes = scopes
        self._credentials: Any = None
        self._stale = False
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="auth")

    def _load(self) -> Any:
        import google.auth

        if self._credentials_file:
            self._log.debug("Loading credentials from {path}", path=self._credentials_file)
            credentials, _ = google.auth.load_credentials_from_file(
                self._credentials_file, scopes=list(self._scopes),
            )
        else:
            self._log.debug("Loading application default credentials")
            credentials, _ = google.auth.default(scopes=list(self._scopes))
        return credentials

    @staticmethod
    def _refresh(credentials: Any) -> None:
        from google.auth.transport.requests import Request

        credentials.refresh(Request())

    async def headers(self) -> dict[str, str]:
        from google.auth.exceptions import GoogleAuthError

        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                if self._credentials is None:
                    self._credentials = await loop.run_in_executor(None, self._load)
                if self._stale or not self._credentials.valid:
                    self._log.debug("Refreshing access token")
                    await loop.run_in_executor(None, self._refresh, self._credentials)
                    self._stale = False
            except GoogleAuthError as e:
                raise AuthError(f"could not obtain Google credentials: {e}") from e
            token = self._credentials.token
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        async with self._lock:
            self._stale = True


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(await self._auth.headers())
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
    ) -> Any:
        session = await self._ensure_session()
        headers = await self._build_headers()
        self._log.debug("{method} {url}", method=method, url=self._url(path))

        try:
            async with session.request(
                method, self._url(path), headers=headers, json=json
            ) as resp:
                if resp.status == 401 and self._auth:
                    self._log.debug("401 received, refreshing auth and retrying")
                    await self._auth.on_401()
                    retry_headers = await self._build_headers()
                    async with session.request(
                        method,
                        self._url(path),
                        headers=retry_headers,
                        json=json,
                    ) as retry_resp:
                        return await self._parse(retry_resp)

                return await self._parse(resp)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e) or type(e).__name__) from e
        except TimeoutError as e:
            raise HttpError(status=0, body=f"request timed out: {method} {path}") from e

    async def _parse(self, resp: aiohttp.ClientResponse) -> Any:
        if resp.status >= 400:
            body = await resp.text()
            self._log.debug(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        body = await resp.read()
        return await resp.json(content_type=None) if body else None

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
