"""Freshness rules and the rule engine.

Rules for one entity kind are evaluated as a set: every rule whose condition
matches and whose ``max_age`` is exceeded is a candidate, and the candidate with
the highest priority wins. Ties go to the rule declared first.
"""

from __future__ import annotations

import math
from typing import Any, Iterable

from .config import ConfigError
from .models import Artist, FreshnessDecision, FreshnessRule, Show, Venue
from .utils import format_duration, parse_iso

HOUR = 3600
DAY = 24 * HOUR

SPOTIFY_SYNC = "spotify-sync"
FULL_SYNC = "full-sync"
SETLIST_SYNC = "setlist-sync"
TICKETMASTER_SYNC = "ticketmaster-sync"
VENUE_SYNC = "venue-sync"

FORCE_REFRESH_SYNC_TYPES = {
    "artist": SPOTIFY_SYNC,
    "show": TICKETMASTER_SYNC,
    "venue": VENUE_SYNC,
}


def always(entity: Any) -> bool:
    return True


def is_trending(artist: Artist) -> bool:
    return artist.trending_score > 50


def has_upcoming_shows(artist: Artist) -> bool:
    return artist.upcoming_show_count > 0


def has_recent_shows(artist: Artist) -> bool:
    return artist.recent_show_count > 0


def is_popular(artist: Artist) -> bool:
    return artist.follower_count > 1000


def is_this_week(show: Show) -> bool:
    if show.days_until_show is None:
        return False
    return 0 <= show.days_until_show <= 7


def is_upcoming(show: Show) -> bool:
    return show.status == "upcoming"


def is_active_venue(venue: Venue) -> bool:
    return venue.show_count > 10


ARTIST_RULES = (
    FreshnessRule("artist", is_trending, 6 * HOUR, 9, SPOTIFY_SYNC,
                  "Trending artists need frequent updates"),
    FreshnessRule("artist", has_upcoming_shows, 12 * HOUR, 8, FULL_SYNC,
                  "Artists with upcoming shows need current data"),
    FreshnessRule("artist", has_recent_shows, 6 * HOUR, 7, SETLIST_SYNC,
                  "Artists with recent shows need setlist updates"),
    FreshnessRule("artist", is_popular, DAY, 6, SPOTIFY_SYNC,
                  "Popular artists need daily updates"),
    FreshnessRule("artist", always, 7 * DAY, 3, SPOTIFY_SYNC,
                  "All artists need weekly refresh"),
)

SHOW_RULES = (
    FreshnessRule("show", is_this_week, 4 * HOUR, 8, TICKETMASTER_SYNC,
                  "Shows happening soon need frequent updates"),
    FreshnessRule("show", is_upcoming, 3 * DAY, 3, TICKETMASTER_SYNC,
                  "Upcoming shows need periodic refresh"),
    FreshnessRule("show", always, 7 * DAY, 2, TICKETMASTER_SYNC,
                  "All tracked shows need weekly refresh"),
)

VENUE_RULES = (
    FreshnessRule("venue", is_active_venue, 2 * DAY, 5, VENUE_SYNC,
                  "Active venues need regular updates"),
    FreshnessRule("venue", always, 7 * DAY, 3, VENUE_SYNC,
                  "All venues need weekly refresh"),
)

DEFAULT_RULES: dict[str, tuple[FreshnessRule, ...]] = {
    "artist": ARTIST_RULES,
    "show": SHOW_RULES,
    "venue": VENUE_RULES,
}


def is_catch_all(rule: FreshnessRule) -> bool:
    return rule.condition is always


def evaluate(
    entity_kind: str,
    entity: Any,
    data_age_seconds: float,
    rules: Iterable[FreshnessRule],
) -> FreshnessDecision:
    winner: FreshnessRule | None = None
    for rule in rules:
        if rule.entity_kind != entity_kind:
            continue
        if not rule.condition(entity):
            continue
        if data_age_seconds <= rule.max_age:
            continue
        if winner is None or rule.priority > winner.priority:
            winner = rule
    if winner is None:
        return FreshnessDecision(requires_sync=False, priority=0, reason="")
    return FreshnessDecision(
        requires_sync=True,
        priority=winner.priority,
        reason=winner.description,
        sync_type=winner.sync_type,
    )


def data_age_seconds(
    last_synced_at: str | None,
    created_at: str | None,
    now,
    use_created_at: bool = False,
) -> float:
    anchor = parse_iso(last_synced_at)
    if anchor is None and use_created_at:
        anchor = parse_iso(created_at)
    if anchor is None:
        return math.inf
    return max(0.0, (now - anchor).total_seconds())


def validate_rules(rules_by_kind: dict[str, Iterable[FreshnessRule]]) -> None:
    errors: list[str] = []
    for kind, rules in rules_by_kind.items():
        rules = list(rules)
        catch_alls = [rule for rule in rules if is_catch_all(rule)]
        if not catch_alls:
            errors.append(f"{kind} rules need a catch-all rule")
            continue
        lowest = min(rule.priority for rule in rules)
        if min(rule.priority for rule in catch_alls) != lowest:
            errors.append(f"{kind} catch-all rule must carry the lowest priority")
        for rule in rules:
            if rule.entity_kind != kind:
                errors.append(f"{kind} rule set contains a {rule.entity_kind} rule")
            if rule.max_age <= 0:
                errors.append(f"{kind} rule '{rule.description}' needs a positive max_age")
    if errors:
        raise ConfigError("Invalid freshness rules: " + "; ".join(errors))


def describe_rules(rules_by_kind: dict[str, Iterable[FreshnessRule]]) -> list[dict[str, object]]:
    return [
        {
            "description": rule.description,
            "entity_type": rule.entity_kind,
            "max_age": format_duration(rule.max_age),
            "priority": rule.priority,
            "sync_type": rule.sync_type,
        }
        for rules in rules_by_kind.values()
        for rule in rules
    ]
