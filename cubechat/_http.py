"""Thin HTTP client wrapping requests.Session with auth, error mapping, and retry."""

import logging
import time
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ._exceptions import STATUS_MAP, UpstreamHttpError

logger = logging.getLogger(__name__)

# Retry config
_MAX_RETRIES = 3
_INITIAL_BACKOFF = 0.5  # seconds
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_CONNECT_RETRIES = 2


def _raise_for_status(resp: requests.Response, *, method: str = "", path: str = "") -> None:
    """Map HTTP error responses to typed exceptions."""
    message = f"HTTP {resp.status_code}"
    request_id = None
    try:
        body = resp.json()
        error_obj = body.get("error", {})
        if isinstance(error_obj, str):
            message = error_obj
        else:
            message = error_obj.get("message", body.get("detail", message))
            request_id = error_obj.get("request_id", body.get("request_id"))
    except (ValueError, KeyError, AttributeError):
        logger.debug("Failed to parse error body: %s", resp.text[:200] if resp.text else "empty")
        message = resp.text or message

    resp.close()
    exc_cls = STATUS_MAP.get(resp.status_code, UpstreamHttpError)
    raise exc_cls(
        message, status_code=resp.status_code, request_id=request_id, method=method, path=path
    )


class HTTPClient:
    """Minimal HTTP client with header auth, error mapping, and automatic retry.

    The Cube service expects ``Authorization: Api-Key <key>``; the downstream
    service needs no auth, so ``api_key`` is optional.
    """

    def __init__(
        self,
        base_url: str = "",
        api_key: str | None = None,
        timeout: int = 300,
        auth_scheme: str = "Api-Key",
        max_retries: int = _MAX_RETRIES,
    ):
        self._session = requests.Session()
        # Connection setup failures never reach the server, so any method may retry them
        adapter = HTTPAdapter(
            max_retries=Retry(
                total=None,
                connect=_CONNECT_RETRIES,
                read=0,
                status=0,
                other=0,
                backoff_factor=_INITIAL_BACKOFF,
                allowed_methods=None,
                raise_on_status=False,
            )
        )
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)
        if api_key:
            self._session.headers["Authorization"] = f"{auth_scheme} {api_key}"
        self._session.headers["Content-Type"] = "application/json"
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._auth_scheme = auth_scheme
        self._max_retries = max(1, max_retries)

    def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        is_stream: bool = False,
        attempts: int | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send request with retry on 429/5xx. Respects Retry-After header."""
        max_attempts = max(1, attempts) if attempts is not None else self._max_retries
        last_exc: Exception | None = None
        for attempt in range(max_attempts):
            try:
                resp = self._session.request(
                    method, url, timeout=self._timeout, stream=is_stream, **kwargs
                )
            except requests.Timeout as e:
                last_exc = e
                logger.warning(
                    "Request timed out (attempt %d/%d): %s", attempt + 1, max_attempts, e
                )
                if attempt < max_attempts - 1:
                    time.sleep(_INITIAL_BACKOFF * (2**attempt))
                    continue
                raise UpstreamHttpError(str(e), status_code=None, method=method, path=url) from e
            except requests.ConnectionError as e:
                # Connect failures were already retried by the adapter
                logger.warning("Connection failed for %s %s: %s", method, url, e)
                raise UpstreamHttpError(str(e), status_code=None, method=method, path=url) from e

            if resp.ok:
                return resp

            if resp.status_code not in _RETRYABLE_STATUS or attempt == max_attempts - 1:
                _raise_for_status(resp, method=method, path=url)

            # Drain and release the connection before retrying
            resp.close()
            retry_after = resp.headers.get("Retry-After")
            if retry_after and resp.status_code == 429:
                try:
                    delay = float(retry_after)
                except ValueError:
                    logger.debug("Unparseable Retry-After header: %s", retry_after)
                    delay = _INITIAL_BACKOFF * (2**attempt)
            else:
                delay = _INITIAL_BACKOFF * (2**attempt)
            logger.debug(
                "Retrying %s %s (attempt %d, delay %.1fs)", method, url, attempt + 1, delay
            )
            time.sleep(delay)

        if last_exc:
            raise UpstreamHttpError(str(last_exc), status_code=None) from last_exc
        raise UpstreamHttpError("Max retries exceeded", status_code=None)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}{path}"

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Send request and raise typed exception on error."""
        return self._request_with_retry(method, self._url(path), **kwargs)

    def stream(
        self,
        method: str,
        path: str,
        *,
        api_key: str | None = None,
        retry: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """Send request with stream=True for line-by-line parsing.

        ``api_key`` overrides the session credential for this call only.
        ``retry=False`` sends a non-idempotent request exactly once.
        """
        if api_key:
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Authorization"] = f"{self._auth_scheme} {api_key}"
            kwargs["headers"] = headers
        return self._request_with_retry(
            method,
            self._url(path),
            is_stream=True,
            attempts=None if retry else 1,
            **kwargs,
        )

    def close(self) -> None:
        self._session.close()
