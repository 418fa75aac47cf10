# src/dashboard_client/client.py

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from .cancellation import CancelToken
from .config import ClientConfig
from .credential_store import CredentialStore, FileCredentialStore
from .error_handler import (
    RequestCancelledError,
    UnauthenticatedError,
    UnexpectedResponseError,
    classify_exception,
    classify_response,
)
from .failure_logger import configure_failure_logger, log_failure
from .renewal_coordinator import RenewalCoordinator
from .retry import with_retry
from .utils.resilient_io import safe_write_bytes

lib_logger = logging.getLogger("dashboard_client")

DEFAULT_HEADERS = {"Accept": "application/json"}
UPLOAD_CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int], Any]


@dataclass(frozen=True)
class RequestSpec:
    """
    Everything needed to (re)issue one call. Replays after a token renewal
    copy the RequestSpec with retried=True, which bounds auth retries to one.
    """

    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    data: Optional[Dict[str, Any]] = None
    files: Any = None
    headers: Optional[Dict[str, str]] = None
    raw: bool = False
    on_upload_progress: Optional[ProgressCallback] = None
    is_renewal: bool = False
    allow_renewal: bool = True
    retried: bool = False


class ApiClient:
    """
    Authenticated request pipeline for the dashboard API.

    Every call is augmented with the stored bearer token, timed, and either
    unwrapped to the envelope's `data` or turned into an ApiError. A 401 hands
    control to the RenewalCoordinator and the call is replayed once with the
    renewed token.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        credential_store: Optional[CredentialStore] = None,
        coordinator: Optional[RenewalCoordinator] = None,
        on_session_expired: Optional[Callable[[Exception], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        configure_logging: bool = True,
    ):
        """
        Args:
            config: Client settings; read from the environment when omitted
            credential_store: Token storage; a FileCredentialStore under
                config.data_dir when omitted
            coordinator: Shared renewal coordinator; created when omitted
            on_session_expired: Called once each time a renewal fails and the
                session is torn down (e.g. to redirect to the login page).
                Ignored when `coordinator` is given.
            transport: Optional httpx transport (tests, proxies)
            http_client: Pre-built httpx.AsyncClient; overrides base_url,
                timeout and transport
            configure_logging: When True, library logs propagate to the
                parent application's logging configuration
        """
        self.config = config or ClientConfig.from_env()
        self.credentials = credential_store or FileCredentialStore.from_config(self.config)
        self.coordinator = coordinator or RenewalCoordinator(
            self.credentials, on_session_expired=on_session_expired
        )

        configure_failure_logger(self.config.logs_dir)
        lib_logger.propagate = configure_logging

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout(),
            headers=DEFAULT_HEADERS,
            transport=transport,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Public verbs
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        files: Any = None,
        headers: Optional[Dict[str, str]] = None,
        retry_safe: bool = False,
        cancel_token: Optional[CancelToken] = None,
        raw: bool = False,
        on_upload_progress: Optional[ProgressCallback] = None,
        allow_renewal: bool = True,
    ) -> Any:
        """
        Issue a call through the pipeline.

        Args:
            method: HTTP verb
            url: Path relative to the configured base URL (or absolute)
            params / json / data / files / headers: As for httpx
            retry_safe: Mark the call idempotent so server and network errors
                are replayed with exponential backoff
            cancel_token: Abort handle; a cancelled call raises
                RequestCancelledError and has no further effect
            raw: Return the response bytes instead of the unwrapped envelope
            on_upload_progress: Called with an integer percent (0-100) while
                the request body is sent
            allow_renewal: False for calls whose 401 means bad credentials
                (login) rather than an expired session

        Returns:
            The envelope's `data` (or raw bytes)

        Raises:
            ApiError: classified failure, see error_handler
        """
        spec = RequestSpec(
            method=method.upper(),
            url=url,
            params=params,
            json=json,
            data=data,
            files=files,
            headers=headers,
            raw=raw,
            on_upload_progress=on_upload_progress,
            allow_renewal=allow_renewal,
        )

        async def attempt() -> Any:
            if cancel_token is None:
                return await self._send(spec)
            try:
                return await cancel_token.guard(self._send(spec))
            except RequestCancelledError as e:
                e.method, e.url = spec.method, spec.url
                lib_logger.debug(f"{spec.method} {spec.url} cancelled")
                raise

        if retry_safe:
            return await with_retry(
                attempt,
                retries=self.config.retry_attempts,
                delay=self.config.retry_delay,
            )
        return await attempt()

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("GET", url, params=params, **kwargs)

    async def post(self, url: str, json: Any = None, **kwargs) -> Any:
        return await self.request("POST", url, json=json, **kwargs)

    async def put(self, url: str, json: Any = None, **kwargs) -> Any:
        return await self.request("PUT", url, json=json, **kwargs)

    async def patch(self, url: str, json: Any = None, **kwargs) -> Any:
        return await self.request("PATCH", url, json=json, **kwargs)

    async def delete(self, url: str, **kwargs) -> Any:
        return await self.request("DELETE", url, **kwargs)

    async def upload(
        self,
        url: str,
        files: Any,
        data: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        **kwargs,
    ) -> Any:
        """
        POST a multipart body.

        Args:
            files: httpx-style files mapping, e.g. {"file": (name, bytes, mime)}
            data: Extra form fields
            on_progress: Called with the integer percent of the body sent
        """
        return await self.request(
            "POST", url, files=files, data=data, on_upload_progress=on_progress, **kwargs
        )

    async def download(
        self,
        url: str,
        destination: Union[str, Path],
        params: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> Path:
        """
        GET a binary response and save it to `destination`.

        Returns:
            The written path
        """
        content = await self.request("GET", url, params=params, raw=True, **kwargs)
        destination = Path(destination)
        if not safe_write_bytes(destination, content, lib_logger):
            raise IOError(f"Failed to save download from {url} to '{destination}'")
        lib_logger.info(f"Downloaded {len(content)} bytes from {url} to '{destination.name}'")
        return destination

    async def batch(self, *calls: Awaitable[Any]) -> List[Any]:
        """Run calls concurrently; the first failure is raised."""
        return list(await asyncio.gather(*calls))

    # ------------------------------------------------------------------
    # Pipeline internals
    # ------------------------------------------------------------------

    async def _send(self, spec: RequestSpec) -> Any:
        sent_token = self.credentials.get_access()
        response, duration_ms = await self._perform(spec, sent_token)

        if response.is_success:
            return self._normalize(spec, response, duration_ms)

        if response.status_code == 401 and spec.allow_renewal and not spec.is_renewal:
            return await self._handle_unauthorized(spec, response, sent_token, duration_ms)

        error = classify_response(response, duration_ms)
        log_failure(error)
        raise error

    async def _perform(
        self, spec: RequestSpec, token: Optional[str]
    ) -> Tuple[httpx.Response, float]:
        headers = dict(spec.headers or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        request = self._http.build_request(
            spec.method,
            spec.url,
            params=spec.params,
            json=spec.json,
            data=spec.data,
            files=spec.files,
            headers=headers,
        )
        if spec.on_upload_progress is not None:
            request = self._with_upload_progress(request, spec.on_upload_progress)

        start_time = time.perf_counter()
        try:
            response = await self._http.send(request)
            await response.aread()
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            error = classify_exception(
                e, method=spec.method, url=str(request.url), duration_ms=duration_ms
            )
            log_failure(error)
            raise error from e

        duration_ms = (time.perf_counter() - start_time) * 1000
        lib_logger.debug(
            f"{spec.method} {request.url} -> {response.status_code} in {duration_ms:.0f}ms"
        )
        return response, duration_ms

    def _with_upload_progress(
        self, request: httpx.Request, on_progress: ProgressCallback
    ) -> httpx.Request:
        """Re-stream an encoded body in chunks, reporting percent sent."""
        body = request.read()
        total = len(body)

        async def stream():
            if total == 0:
                on_progress(100)
                return
            sent = 0
            last_percent = -1
            for offset in range(0, total, UPLOAD_CHUNK_SIZE):
                chunk = body[offset : offset + UPLOAD_CHUNK_SIZE]
                yield chunk
                sent += len(chunk)
                percent = round(sent * 100 / total)
                if percent != last_percent:
                    last_percent = percent
                    on_progress(percent)

        # Content-Length is kept from the original encoding, so httpx sends
        # a sized body rather than a chunked one
        return httpx.Request(
            request.method,
            request.url,
            headers=request.headers,
            content=stream(),
        )

    def _normalize(
        self, spec: RequestSpec, response: httpx.Response, duration_ms: float
    ) -> Any:
        if spec.raw:
            return response.content
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return response.text

        if isinstance(body, dict) and "success" in body:
            if body.get("success") is False:
                error = UnexpectedResponseError(
                    body.get("message") or "Request was not successful",
                    status_code=response.status_code,
                    errors=body.get("errors"),
                    payload=body,
                    method=spec.method,
                    url=str(response.request.url),
                    duration_ms=duration_ms,
                )
                log_failure(error)
                raise error
            return body.get("data")
        return body

    async def _handle_unauthorized(
        self,
        spec: RequestSpec,
        response: httpx.Response,
        sent_token: Optional[str],
        duration_ms: float,
    ) -> Any:
        if spec.retried:
            # Rejected even with a fresh token: surface it, never loop
            error = classify_response(response, duration_ms)
            log_failure(error)
            raise error

        current_token = self.credentials.get_access()
        if current_token and current_token != sent_token:
            lib_logger.debug(
                f"{spec.method} {spec.url} carried a superseded token, replaying"
            )
            return await self._send(replace(spec, retried=True))

        if sent_token and not self.credentials.has_credentials():
            # A renewal already failed and tore the session down
            raise UnauthenticatedError(
                status_code=401, method=spec.method, url=spec.url, duration_ms=duration_ms
            )

        await self.coordinator.renew(self._renew_tokens)
        return await self._send(replace(spec, retried=True))

    async def _renew_tokens(self) -> Tuple[str, Optional[str]]:
        """The renewal call the coordinator runs; bypasses 401 handling."""
        refresh_token = self.credentials.get_refresh()
        if not refresh_token:
            raise UnauthenticatedError("No refresh token available")

        payload = await self._send(
            RequestSpec(
                method="POST",
                url=self.config.refresh_path,
                json={"refreshToken": refresh_token},
                is_renewal=True,
            )
        )
        if not isinstance(payload, dict) or not payload.get("accessToken"):
            raise UnexpectedResponseError("Malformed token renewal response", payload=payload)
        return payload["accessToken"], payload.get("refreshToken")
