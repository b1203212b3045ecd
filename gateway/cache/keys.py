"""
Cache key construction.

A key is "<kind>:<id>:<id>..." optionally followed by "?name=value&..."
with params sorted by name. Components are percent-escaped so that
separators inside identifiers can never make two requests collide.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple
from urllib.parse import quote

from .core import ResourceKind


def _component(value: Any) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    elif isinstance(value, (list, tuple)):
        value = ",".join(str(v) for v in value)
    return quote(str(value).strip(), safe="")


def normalize_params(params: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    """Sorted (name, value) pairs with None values dropped."""
    if not params:
        return ()
    return tuple(sorted(
        (_component(k), _component(v))
        for k, v in params.items()
        if v is not None
    ))


def build_cache_key(
    kind: ResourceKind,
    identifiers: Sequence[Any] = (),
    params: Optional[Dict[str, Any]] = None,
) -> str:
    """Deterministic key for a logical resource request."""
    parts = [kind.value] + [_component(i) for i in identifiers]
    key = ":".join(parts)
    normalized = normalize_params(params)
    if normalized:
        key += "?" + "&".join(f"{k}={v}" for k, v in normalized)
    return key


@dataclass(frozen=True)
class ResourceRequest:
    """
    Descriptor for one logical upstream resource.

    identifiers are positional (league, game id, ...); params are optional
    query parameters that refine the request.
    """
    kind: ResourceKind
    identifiers: Tuple[Any, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return build_cache_key(self.kind, self.identifiers, self.params)


# Named builders for the resources the gateway serves
def live_game_key(league: str, game_id: str) -> str:
    return build_cache_key(ResourceKind.LIVE_GAME, (league, game_id))


def scoreboard_key(league: str, date: str) -> str:
    return build_cache_key(ResourceKind.SCOREBOARD, (league, date))


def box_score_key(league: str, game_id: str) -> str:
    return build_cache_key(ResourceKind.BOX_SCORE, (league, game_id))


def standings_key(league: str, season: str) -> str:
    return build_cache_key(ResourceKind.STANDINGS, (league, season))


def roster_key(league: str, team_id: str) -> str:
    return build_cache_key(ResourceKind.ROSTER, (league, team_id))


def schedule_key(league: str, start_date: str, end_date: str) -> str:
    return build_cache_key(ResourceKind.SCHEDULE, (league, start_date, end_date))


def player_stats_key(league: str, player_id: str, season: Optional[str] = None) -> str:
    return build_cache_key(ResourceKind.PLAYER_STATS, (league, player_id), {"season": season})


def rankings_key(league: str, poll_type: str) -> str:
    return build_cache_key(ResourceKind.RANKINGS, (league, poll_type))
