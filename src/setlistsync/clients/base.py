from __future__ import annotations

import json
import logging
import socket
import urllib.parse
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import jsonschema

from ..config import SourceConfig
from ..models import NormalizedRecord
from ..utils import log_event, utc_now

USER_AGENT = "setlistsync/1.0"


class FetchError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientFetchError(FetchError):
    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status)
        self.retry_after = retry_after


class PermanentFetchError(FetchError):
    pass


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - utc_now()).total_seconds())


class HttpJsonClient:
    """Minimal JSON-over-HTTP client shared by the upstream adapters.

    Errors are split by whether retrying can help: timeouts, network failures,
    429 and 5xx responses raise ``TransientFetchError``; every other 4xx, an
    undecodable body or a payload that fails its schema raises
    ``PermanentFetchError``.
    """

    source = ""

    def __init__(self, config: SourceConfig, logger: logging.Logger | None = None) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.logger = logger or logging.getLogger(f"setlistsync.clients.{self.source or 'http'}")

    def fetch(self, resource: str, external_id: str) -> NormalizedRecord:
        raise NotImplementedError

    def _default_headers(self) -> dict[str, str]:
        return {}

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        return url

    def _request_json(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
        schema: dict[str, Any] | None = None,
    ) -> Any:
        request = Request(url, data=data, method=method)
        request.add_header("User-Agent", USER_AGENT)
        request.add_header("Accept", "application/json")
        for key, value in {**self._default_headers(), **(headers or {})}.items():
            request.add_header(key, value)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                status = response.getcode()
                raw = response.read()
        except HTTPError as exc:
            raise self._classify_http_error(exc) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TransientFetchError(f"{self.source} timeout: {exc}") from exc
        except URLError as exc:
            raise TransientFetchError(f"{self.source} network_error: {exc.reason}") from exc
        log_event(
            self.logger,
            logging.DEBUG,
            "upstream_response",
            source=self.source,
            method=method,
            status=status,
            bytes=len(raw),
        )
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PermanentFetchError(f"{self.source} invalid_json: {exc}", status) from exc
        if schema is not None:
            try:
                jsonschema.validate(payload, schema)
            except jsonschema.ValidationError as exc:
                raise PermanentFetchError(
                    f"{self.source} unexpected_payload: {exc.message}", status
                ) from exc
        return payload

    def _classify_http_error(self, exc: HTTPError) -> FetchError:
        body = ""
        try:
            body = exc.read().decode("utf-8", errors="ignore")[:200]
        except Exception:  # noqa: BLE001
            body = ""
        message = f"{self.source} http_error {exc.code}"
        if body:
            message = f"{message}: {body}"
        if exc.code == 429 or exc.code >= 500:
            retry_after = parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None)
            return TransientFetchError(message, exc.code, retry_after)
        return PermanentFetchError(message, exc.code)
