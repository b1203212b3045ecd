"""
TTL configuration, game-status-to-kind mapping and status-aware TTLs.
"""
from datetime import date, datetime, timezone
from typing import Dict, Iterable, Optional, Union

from config.settings import Settings, settings as default_settings

from .core import ResourceKind


LIVE_STATUSES = ("live", "in", "in_progress", "halftime", "end_period")


def build_ttl_config(settings: Optional[Settings] = None) -> Dict[ResourceKind, int]:
    """
    Per-kind TTL table (seconds).

    Short for volatile data (live games), long for near-static data
    (rosters, standings).
    """
    s = settings or default_settings
    return {
        ResourceKind.LIVE_GAME: s.cache_ttl_live_game,
        ResourceKind.SCOREBOARD: s.cache_ttl_scoreboard,
        ResourceKind.BOX_SCORE: s.cache_ttl_box_score,
        ResourceKind.STANDINGS: s.cache_ttl_standings,
        ResourceKind.ROSTER: s.cache_ttl_roster,
        ResourceKind.SCHEDULE: s.cache_ttl_schedule,
        ResourceKind.PLAYER_STATS: s.cache_ttl_player_stats,
        ResourceKind.RANKINGS: s.cache_ttl_rankings,
    }


TTL_CONFIG: Dict[ResourceKind, int] = build_ttl_config()


def get_ttl_for_kind(
    kind: ResourceKind,
    ttl_config: Optional[Dict[ResourceKind, int]] = None,
) -> int:
    """
    Get the TTL for a resource kind.

    Unknown kinds fall back to the scoreboard TTL (short, so a
    misclassified resource is never cached for hours).
    """
    config = ttl_config if ttl_config is not None else TTL_CONFIG
    return config.get(kind, config.get(ResourceKind.SCOREBOARD, 30))


def _is_live(status: Optional[str]) -> bool:
    return (status or "").lower() in LIVE_STATUSES


def get_game_kind(game_status: Optional[str]) -> ResourceKind:
    """
    Kind for a single game's box score.

    Live games refresh on the live-game TTL; scheduled and final games use
    the regular box-score TTL.
    """
    if _is_live(game_status):
        return ResourceKind.LIVE_GAME
    return ResourceKind.BOX_SCORE


def get_scoreboard_kind(game_statuses: Iterable[Optional[str]]) -> ResourceKind:
    """Kind for a scoreboard: live TTL if any game on it is live."""
    if any(_is_live(status) for status in game_statuses):
        return ResourceKind.LIVE_GAME
    return ResourceKind.SCOREBOARD


# =============================================================================
# Status- and date-aware TTLs
# =============================================================================

FINAL_STATUSES = ("final", "post", "completed")


def build_status_ttl_config(settings: Optional[Settings] = None) -> Dict[str, int]:
    """TTLs that depend on game status and date rather than kind alone."""
    s = settings or default_settings
    return {
        "scoreboard_scheduled_today": s.cache_ttl_scoreboard_scheduled_today,
        "final_scoreboard_same_day": s.cache_ttl_final_scoreboard_same_day,
        "final_scoreboard_historical": s.cache_ttl_final_scoreboard_historical,
        "final_box_score_same_day": s.cache_ttl_final_box_score_same_day,
        "final_box_score": s.cache_ttl_final_box_score,
    }


STATUS_TTL_CONFIG: Dict[str, int] = build_status_ttl_config()


def _as_date(value: Union[date, str, None]) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _today(today: Union[date, str, None]) -> date:
    return _as_date(today) or datetime.now(timezone.utc).date()


def _is_final(status: Optional[str]) -> bool:
    return (status or "").lower() in FINAL_STATUSES


def get_box_score_ttl(
    game_status: Optional[str],
    game_date: Union[date, str, None] = None,
    today: Union[date, str, None] = None,
    ttl_config: Optional[Dict[ResourceKind, int]] = None,
    status_ttls: Optional[Dict[str, int]] = None,
) -> int:
    """
    TTL for one game's box score.

    - Live: live-game TTL
    - Final, played today (or date unknown): 6 hours, stat corrections possible
    - Final, earlier date: 7 days
    - Anything else: regular box-score TTL
    """
    status_ttls = status_ttls if status_ttls is not None else STATUS_TTL_CONFIG
    if _is_live(game_status):
        return get_ttl_for_kind(ResourceKind.LIVE_GAME, ttl_config)
    if not _is_final(game_status):
        return get_ttl_for_kind(ResourceKind.BOX_SCORE, ttl_config)

    played = _as_date(game_date)
    if played is not None and played < _today(today):
        return status_ttls["final_box_score"]
    return status_ttls["final_box_score_same_day"]


def get_scoreboard_ttl(
    game_statuses: Iterable[Optional[str]],
    request_date: Union[date, str],
    today: Union[date, str, None] = None,
    ttl_config: Optional[Dict[ResourceKind, int]] = None,
    status_ttls: Optional[Dict[str, int]] = None,
) -> int:
    """
    TTL for a scoreboard date.

    TTL hierarchy:
    1. Any live game -> live-game TTL
    2. Past date -> 24 hours (won't change)
    3. Today or later with games not yet started -> 5 minutes
    4. Today or later, every game final -> 6 hours
    5. No games known -> regular scoreboard TTL
    """
    status_ttls = status_ttls if status_ttls is not None else STATUS_TTL_CONFIG
    statuses = [(status or "").lower() for status in game_statuses]

    if any(_is_live(status) for status in statuses):
        return get_ttl_for_kind(ResourceKind.LIVE_GAME, ttl_config)
    if _as_date(request_date) < _today(today):
        return status_ttls["final_scoreboard_historical"]
    if not statuses:
        return get_ttl_for_kind(ResourceKind.SCOREBOARD, ttl_config)
    if all(_is_final(status) for status in statuses):
        return status_ttls["final_scoreboard_same_day"]
    return status_ttls["scoreboard_scheduled_today"]
