from __future__ import annotations

import logging
import urllib.parse
from datetime import datetime
from typing import Any

from ..config import SourceConfig
from ..models import NormalizedRecord
from .base import HttpJsonClient, PermanentFetchError

SETLISTS_SCHEMA = {
    "type": "object",
    "properties": {
        "total": {"type": "integer"},
        "setlist": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"eventDate": {"type": "string"}},
            },
        },
    },
}


class SetlistFmClient(HttpJsonClient):
    source = "setlistfm"

    def __init__(self, config: SourceConfig, api_key: str, logger: logging.Logger | None = None) -> None:
        super().__init__(config, logger)
        self.api_key = api_key

    def _default_headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key}

    def fetch(self, resource: str, external_id: str) -> NormalizedRecord:
        if resource != "artist_setlists":
            raise PermanentFetchError(f"setlistfm unsupported_resource: {resource}")
        mbid = urllib.parse.quote(str(external_id), safe="")
        url = self._url(f"/artist/{mbid}/setlists", {"p": 1})
        payload = self._request_json("GET", url, schema=SETLISTS_SCHEMA)
        return NormalizedRecord(
            source=self.source,
            resource=resource,
            external_id=external_id,
            attributes=normalize_setlists(payload),
        )


def normalize_setlists(payload: dict[str, Any]) -> dict[str, Any]:
    setlists = payload.get("setlist") or []
    total = payload.get("total")
    attributes: dict[str, Any] = {
        "setlist_count": int(total) if isinstance(total, int) else len(setlists),
    }
    dates = [parse_event_date(item.get("eventDate")) for item in setlists]
    dates = [value for value in dates if value]
    if dates:
        attributes["last_setlist_date"] = max(dates)
    return attributes


def parse_event_date(value: str | None) -> str | None:
    """setlist.fm reports event dates as dd-MM-yyyy."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%d-%m-%Y").date().isoformat()
    except ValueError:
        return None
