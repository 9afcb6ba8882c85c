from __future__ import annotations

import base64
import logging
import threading
import time
import urllib.parse
from typing import Any, Callable

from ..config import SourceConfig
from ..models import NormalizedRecord
from ..utils import json_dumps
from .base import HttpJsonClient, PermanentFetchError, TransientFetchError

TOKEN_REFRESH_MARGIN_SECONDS = 300

TOKEN_SCHEMA = {
    "type": "object",
    "required": ["access_token", "expires_in"],
    "properties": {
        "access_token": {"type": "string", "minLength": 1},
        "expires_in": {"type": "number"},
    },
}

ARTIST_SCHEMA = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "popularity": {"type": "integer"},
        "followers": {"type": "object"},
        "genres": {"type": "array", "items": {"type": "string"}},
        "images": {"type": "array"},
    },
}


class SpotifyClient(HttpJsonClient):
    """Spotify Web API adapter using the client-credentials grant.

    The access token is cached and refreshed a few minutes before it expires.
    A 401 on a data request drops the cached token and is reported as
    transient so the retry picks up a fresh one.
    """

    source = "spotify"

    def __init__(
        self,
        config: SourceConfig,
        client_id: str,
        client_secret: str,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config, logger)
        self.token_url = config.token_url or "https://accounts.spotify.com/api/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self._clock = clock
        self._token_lock = threading.Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0

    def fetch(self, resource: str, external_id: str) -> NormalizedRecord:
        if resource != "artists":
            raise PermanentFetchError(f"spotify unsupported_resource: {resource}")
        url = self._url(f"/artists/{urllib.parse.quote(str(external_id), safe='')}")
        token = self.access_token()
        try:
            payload = self._request_json(
                "GET",
                url,
                headers={"Authorization": f"Bearer {token}"},
                schema=ARTIST_SCHEMA,
            )
        except PermanentFetchError as exc:
            if exc.status == 401:
                self.invalidate_token()
                raise TransientFetchError(str(exc), exc.status) from exc
            raise
        return NormalizedRecord(
            source=self.source,
            resource=resource,
            external_id=external_id,
            attributes=normalize_artist(payload),
        )

    def access_token(self) -> str:
        with self._token_lock:
            now = self._clock()
            if self._token and now < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token
            credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
            payload = self._request_json(
                "POST",
                self.token_url,
                headers={
                    "Authorization": "Basic " + base64.b64encode(credentials).decode("ascii"),
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data=b"grant_type=client_credentials",
                schema=TOKEN_SCHEMA,
            )
            self._token = payload["access_token"]
            self._token_expires_at = now + float(payload["expires_in"])
            return self._token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0


def normalize_artist(payload: dict[str, Any]) -> dict[str, Any]:
    followers = (payload.get("followers") or {}).get("total")
    images = [item for item in payload.get("images") or [] if isinstance(item, dict) and item.get("url")]
    attributes: dict[str, Any] = {
        "name": payload["name"],
        "genres_json": json_dumps(list(payload.get("genres") or [])),
    }
    if isinstance(payload.get("popularity"), int):
        attributes["popularity"] = payload["popularity"]
    if isinstance(followers, int):
        attributes["follower_count"] = followers
    if images:
        attributes["image_url"] = images[0]["url"]
    return attributes
