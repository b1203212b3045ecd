"""
Upstream fetcher for the provider's public site API.

One fetch() is exactly one HTTP call. Failures are classified, never
retried here: retrying would double-spend the upstream budget.
"""
import logging
from typing import Any, Dict, Optional, Tuple

import requests

from gateway.budget import BudgetLimiter
from gateway.cache.core import ResourceKind
from gateway.cache.keys import ResourceRequest
from gateway.errors import (
    TransientNetworkError,
    UnsupportedResource,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnparseable,
)

logger = logging.getLogger("gateway.upstream")

SITE_API = "https://site.api.espn.com/apis/site/v2/sports"
SITE_WEB_API = "https://site.web.api.espn.com/apis/site/v2/sports"
STANDINGS_API = "https://site.api.espn.com/apis/v2/sports"
ATHLETES_API = "https://site.web.api.espn.com/apis/common/v3/sports"

# League -> provider sport path
LEAGUE_PATHS: Dict[str, str] = {
    "nba": "basketball/nba",
    "ncaam": "basketball/mens-college-basketball",
    "nfl": "football/nfl",
    "ncaaf": "football/college-football",
    "nhl": "hockey/nhl",
    "mlb": "baseball/mlb",
    "pga": "golf/pga",
    "lpga": "golf/lpga",
    "korn_ferry": "golf/korn-ferry",
}

# Number of positional identifiers each kind expects (league included)
IDENTIFIER_COUNTS: Dict[ResourceKind, int] = {
    ResourceKind.LIVE_GAME: 2,
    ResourceKind.BOX_SCORE: 2,
    ResourceKind.SCOREBOARD: 2,
    ResourceKind.SCHEDULE: 3,
    ResourceKind.STANDINGS: 1,
    ResourceKind.ROSTER: 2,
    ResourceKind.PLAYER_STATS: 2,
    ResourceKind.RANKINGS: 1,
}


def _compact_date(value: Any) -> str:
    """2026-01-12 -> 20260112"""
    return str(value).replace("-", "")


def build_url(request: ResourceRequest) -> Tuple[str, Dict[str, Any]]:
    """
    Map a resource descriptor to (url, query params).

    Raises:
        UnsupportedResource: Unknown league or wrong identifiers for the kind
    """
    kind = request.kind
    ids = tuple(request.identifiers)
    expected = IDENTIFIER_COUNTS.get(kind)
    if expected is None or len(ids) < expected:
        raise UnsupportedResource(
            f"{kind.value} needs {expected} identifier(s), got {len(ids)}"
        )

    league = str(ids[0]).lower()
    path = LEAGUE_PATHS.get(league)
    if path is None:
        raise UnsupportedResource(f"Unsupported league: {league}")

    params: Dict[str, Any] = {k: v for k, v in request.params.items() if v is not None}

    if kind in (ResourceKind.LIVE_GAME, ResourceKind.BOX_SCORE):
        params["event"] = ids[1]
        return f"{SITE_WEB_API}/{path}/summary", params

    if kind == ResourceKind.SCOREBOARD:
        params["dates"] = _compact_date(ids[1])
        return f"{SITE_API}/{path}/scoreboard", params

    if kind == ResourceKind.SCHEDULE:
        params["dates"] = f"{_compact_date(ids[1])}-{_compact_date(ids[2])}"
        return f"{SITE_API}/{path}/scoreboard", params

    if kind == ResourceKind.STANDINGS:
        if len(ids) > 1:
            params["season"] = ids[1]
        return f"{STANDINGS_API}/{path}/standings", params

    if kind == ResourceKind.ROSTER:
        return f"{SITE_API}/{path}/teams/{ids[1]}/roster", params

    if kind == ResourceKind.PLAYER_STATS:
        return f"{ATHLETES_API}/{path}/athletes/{ids[1]}/stats", params

    # Rankings: optional poll type narrows the response client-side
    if len(ids) > 1:
        params["type"] = ids[1]
    return f"{SITE_API}/{path}/rankings", params


class UpstreamFetcher:
    """
    Performs one bounded HTTP call per fetch() and classifies the outcome.

    Outcomes are reported to the budget limiter so throttling and server
    errors open its backoff window.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        budget: Optional[BudgetLimiter] = None,
        user_agent: str = "BoxScore/1.0",
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._budget = budget
        self._headers = {
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        self.error_count = 0

    def validate(self, request: ResourceRequest) -> None:
        """
        Raises:
            UnsupportedResource: The request can't be mapped to an upstream call
        """
        build_url(request)

    def fetch(self, request: ResourceRequest) -> Any:
        """
        Fetch the raw JSON payload for a resource.

        Raises:
            UpstreamTimeout, UpstreamRejected, UpstreamUnparseable,
            TransientNetworkError, UnsupportedResource
        """
        url, params = build_url(request)
        logger.debug(f"Fetching {request.kind.value} from {url} params={params}")

        try:
            response = self._session.get(
                url,
                params=params,
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            self._record_error(0, is_timeout=True)
            raise UpstreamTimeout(f"Upstream timed out after {self._timeout}s: {url}") from e
        except requests.RequestException as e:
            self._record_error(0)
            raise TransientNetworkError(f"Upstream request failed: {e}") from e

        if not response.ok:
            self._record_error(response.status_code)
            logger.error(f"Upstream rejected {url} with status {response.status_code}")
            raise UpstreamRejected(response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            self.error_count += 1
            raise UpstreamUnparseable(f"Upstream returned an unparseable body for {url}") from e

        if self._budget is not None:
            self._budget.record_success()
        self.error_count = 0
        return payload

    def _record_error(self, status_code: int, is_timeout: bool = False) -> None:
        self.error_count += 1
        if self._budget is not None:
            self._budget.record_error(status_code, is_timeout=is_timeout)
