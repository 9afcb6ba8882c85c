from __future__ import annotations

import logging
import urllib.parse
from typing import Any

from ..config import SourceConfig
from ..models import NormalizedRecord
from .base import HttpJsonClient, PermanentFetchError

ATTRACTION_SCHEMA = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "upcomingEvents": {"type": "object"},
    },
}

EVENT_SCHEMA = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "url": {"type": "string"},
        "dates": {"type": "object"},
        "priceRanges": {"type": "array"},
    },
}

VENUE_SCHEMA = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "city": {"type": "object"},
        "country": {"type": "object"},
    },
}

EVENT_STATUS_MAP = {
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "postponed": "postponed",
    "rescheduled": "upcoming",
    "onsale": "upcoming",
    "offsale": "upcoming",
}


class TicketmasterClient(HttpJsonClient):
    source = "ticketmaster"

    def __init__(self, config: SourceConfig, api_key: str, logger: logging.Logger | None = None) -> None:
        super().__init__(config, logger)
        self.api_key = api_key

    def fetch(self, resource: str, external_id: str) -> NormalizedRecord:
        if resource == "attractions":
            payload = self._get(f"/attractions/{_quote(external_id)}.json", ATTRACTION_SCHEMA)
            attributes = normalize_attraction(payload)
        elif resource == "events":
            payload = self._get(f"/events/{_quote(external_id)}.json", EVENT_SCHEMA)
            attributes = normalize_event(payload)
        elif resource == "venues":
            payload = self._get(f"/venues/{_quote(external_id)}.json", VENUE_SCHEMA)
            attributes = normalize_venue(payload)
        else:
            raise PermanentFetchError(f"ticketmaster unsupported_resource: {resource}")
        return NormalizedRecord(
            source=self.source,
            resource=resource,
            external_id=external_id,
            attributes=attributes,
        )

    def _get(self, path: str, schema: dict[str, Any]) -> Any:
        url = self._url(path, {"apikey": self.api_key})
        return self._request_json("GET", url, schema=schema)


def normalize_attraction(payload: dict[str, Any]) -> dict[str, Any]:
    upcoming = payload.get("upcomingEvents") or {}
    total = upcoming.get("_total")
    if total is None:
        total = sum(value for key, value in upcoming.items() if isinstance(value, int) and not key.startswith("_"))
    return {
        "name": payload["name"],
        "tm_upcoming_events": int(total or 0),
    }


def normalize_event(payload: dict[str, Any]) -> dict[str, Any]:
    dates = payload.get("dates") or {}
    start = dates.get("start") or {}
    status_code = ((dates.get("status") or {}).get("code") or "").lower()
    attributes: dict[str, Any] = {
        "status": EVENT_STATUS_MAP.get(status_code, "upcoming"),
    }
    if payload.get("name"):
        attributes["name"] = payload["name"]
    event_date = start.get("dateTime") or start.get("localDate")
    if event_date:
        attributes["date"] = event_date
    if payload.get("url"):
        attributes["ticket_url"] = payload["url"]
    prices = [item for item in payload.get("priceRanges") or [] if isinstance(item, dict)]
    mins = [item["min"] for item in prices if isinstance(item.get("min"), (int, float))]
    maxes = [item["max"] for item in prices if isinstance(item.get("max"), (int, float))]
    if mins:
        attributes["min_price"] = float(min(mins))
    if maxes:
        attributes["max_price"] = float(max(maxes))
    return attributes


def normalize_venue(payload: dict[str, Any]) -> dict[str, Any]:
    attributes: dict[str, Any] = {"name": payload["name"]}
    city = (payload.get("city") or {}).get("name")
    country = (payload.get("country") or {}).get("countryCode") or (payload.get("country") or {}).get("name")
    if city:
        attributes["city"] = city
    if country:
        attributes["country"] = country
    if payload.get("timezone"):
        attributes["timezone"] = payload["timezone"]
    if payload.get("url"):
        attributes["url"] = payload["url"]
    return attributes


def _quote(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")
