from __future__ import annotations

import logging
import os

from ..config import Config
from ..utils import log_event
from .base import FetchError, HttpJsonClient, PermanentFetchError, TransientFetchError
from .setlistfm import SetlistFmClient
from .spotify import SpotifyClient
from .ticketmaster import TicketmasterClient


def build_default_clients(config: Config, logger: logging.Logger | None = None) -> dict[str, HttpJsonClient]:
    """Build one client per upstream whose credentials are present in the environment."""
    logger = logger or logging.getLogger("setlistsync.clients")
    clients: dict[str, HttpJsonClient] = {}
    tm_key = os.environ.get("SS_TICKETMASTER_API_KEY", "").strip()
    if tm_key and "ticketmaster" in config.sources:
        clients["ticketmaster"] = TicketmasterClient(config.sources["ticketmaster"], tm_key)
    spotify_id = os.environ.get("SS_SPOTIFY_CLIENT_ID", "").strip()
    spotify_secret = os.environ.get("SS_SPOTIFY_CLIENT_SECRET", "").strip()
    if spotify_id and spotify_secret and "spotify" in config.sources:
        clients["spotify"] = SpotifyClient(config.sources["spotify"], spotify_id, spotify_secret)
    setlistfm_key = os.environ.get("SS_SETLISTFM_API_KEY", "").strip()
    if setlistfm_key and "setlistfm" in config.sources:
        clients["setlistfm"] = SetlistFmClient(config.sources["setlistfm"], setlistfm_key)
    missing = sorted(set(config.sources) - set(clients))
    if missing:
        log_event(logger, logging.WARNING, "upstream_credentials_missing", sources=",".join(missing))
    return clients


__all__ = [
    "FetchError",
    "HttpJsonClient",
    "PermanentFetchError",
    "SetlistFmClient",
    "SpotifyClient",
    "TicketmasterClient",
    "TransientFetchError",
    "build_default_clients",
]
