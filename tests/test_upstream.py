"""
Tests for upstream URL mapping and failure classification.
"""
from unittest.mock import Mock

import pytest
import requests

from gateway.budget import BudgetLimiter
from gateway.cache.core import ResourceKind
from gateway.cache.keys import ResourceRequest
from gateway.errors import (
    BudgetReason,
    TransientNetworkError,
    UnsupportedResource,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnparseable,
)
from gateway.upstream import UpstreamFetcher, build_url


def make_response(status=200, body=None, bad_json=False):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 400
    if bad_json:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body if body is not None else {}
    return response


def make_fetcher(response=None, error=None, budget=None):
    session = Mock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return UpstreamFetcher(session=session, timeout=5.0, budget=budget), session


# =============================================================================
# URL mapping
# =============================================================================

class TestBuildUrl:

    def test_box_score(self):
        url, params = build_url(ResourceRequest(ResourceKind.BOX_SCORE, ("nba", "401584793")))
        assert url.endswith("/basketball/nba/summary")
        assert params == {"event": "401584793"}

    def test_live_game_uses_summary_too(self):
        url, params = build_url(ResourceRequest(ResourceKind.LIVE_GAME, ("nfl", "401671789")))
        assert url.endswith("/football/nfl/summary")
        assert params["event"] == "401671789"

    def test_scoreboard_date_is_compacted(self):
        url, params = build_url(ResourceRequest(ResourceKind.SCOREBOARD, ("nhl", "2026-01-12")))
        assert url.endswith("/hockey/nhl/scoreboard")
        assert params == {"dates": "20260112"}

    def test_schedule_range(self):
        url, params = build_url(
            ResourceRequest(ResourceKind.SCHEDULE, ("mlb", "2026-04-01", "2026-04-07"))
        )
        assert url.endswith("/baseball/mlb/scoreboard")
        assert params["dates"] == "20260401-20260407"

    def test_standings_with_season(self):
        url, params = build_url(ResourceRequest(ResourceKind.STANDINGS, ("nba", "2026")))
        assert "/apis/v2/sports/basketball/nba/standings" in url
        assert params == {"season": "2026"}

    def test_roster_and_player_stats(self):
        url, _ = build_url(ResourceRequest(ResourceKind.ROSTER, ("nba", "13")))
        assert url.endswith("/basketball/nba/teams/13/roster")

        url, params = build_url(
            ResourceRequest(ResourceKind.PLAYER_STATS, ("nba", "1966"), {"season": "2026"})
        )
        assert url.endswith("/basketball/nba/athletes/1966/stats")
        assert params == {"season": "2026"}

    def test_league_is_case_insensitive(self):
        url, _ = build_url(ResourceRequest(ResourceKind.RANKINGS, ("NCAAF",)))
        assert url.endswith("/football/college-football/rankings")

    def test_unknown_league_rejected(self):
        with pytest.raises(UnsupportedResource):
            build_url(ResourceRequest(ResourceKind.SCOREBOARD, ("xfl", "2026-01-12")))

    def test_missing_identifiers_rejected(self):
        with pytest.raises(UnsupportedResource):
            build_url(ResourceRequest(ResourceKind.BOX_SCORE, ("nba",)))


# =============================================================================
# Fetch outcomes
# =============================================================================

REQUEST = ResourceRequest(ResourceKind.BOX_SCORE, ("nba", "401584793"))


class TestUpstreamFetcher:

    def test_success_returns_payload(self):
        fetcher, session = make_fetcher(make_response(body={"header": {"id": "401584793"}}))

        assert fetcher.fetch(REQUEST) == {"header": {"id": "401584793"}}
        session.get.assert_called_once()
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == 5.0
        assert kwargs["params"] == {"event": "401584793"}
        assert kwargs["headers"]["Accept"] == "application/json"

    def test_timeout_classified(self):
        fetcher, _ = make_fetcher(error=requests.Timeout("read timed out"))
        with pytest.raises(UpstreamTimeout) as exc_info:
            fetcher.fetch(REQUEST)
        assert exc_info.value.retryable

    def test_network_error_classified(self):
        fetcher, _ = make_fetcher(error=requests.ConnectionError("connection reset"))
        with pytest.raises(TransientNetworkError) as exc_info:
            fetcher.fetch(REQUEST)
        assert exc_info.value.retryable
        assert exc_info.value.code == "UPSTREAM_UNAVAILABLE"

    def test_not_found_is_not_retryable(self):
        fetcher, _ = make_fetcher(make_response(status=404))
        with pytest.raises(UpstreamRejected) as exc_info:
            fetcher.fetch(REQUEST)
        error = exc_info.value
        assert error.status == 404
        assert error.status_code == 404
        assert not error.retryable

    def test_server_error_rejected(self):
        fetcher, _ = make_fetcher(make_response(status=500))
        with pytest.raises(UpstreamRejected) as exc_info:
            fetcher.fetch(REQUEST)
        assert exc_info.value.status_code == 502

    def test_unparseable_body(self):
        fetcher, _ = make_fetcher(make_response(bad_json=True))
        with pytest.raises(UpstreamUnparseable):
            fetcher.fetch(REQUEST)

    def test_single_call_per_fetch(self):
        fetcher, session = make_fetcher(error=requests.ConnectionError("reset"))
        with pytest.raises(TransientNetworkError):
            fetcher.fetch(REQUEST)
        assert session.get.call_count == 1

    def test_unsupported_request_never_hits_network(self):
        fetcher, session = make_fetcher(make_response())
        with pytest.raises(UnsupportedResource):
            fetcher.fetch(ResourceRequest(ResourceKind.ROSTER, ("cfl", "1")))
        session.get.assert_not_called()


class TestBudgetFeedback:

    def test_throttling_opens_budget_backoff(self, clock):
        budget = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        fetcher, _ = make_fetcher(make_response(status=429), budget=budget)

        with pytest.raises(UpstreamRejected):
            fetcher.fetch(REQUEST)

        admission = budget.try_admit()
        assert admission.reason == BudgetReason.BACKOFF
        assert fetcher.error_count == 1

    def test_timeout_opens_budget_backoff(self, clock):
        budget = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        fetcher, _ = make_fetcher(error=requests.Timeout(), budget=budget)

        with pytest.raises(UpstreamTimeout):
            fetcher.fetch(REQUEST)

        assert budget.try_admit().retry_after_seconds == 15

    def test_success_resets_error_count(self, clock):
        budget = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        session = Mock()
        session.get.side_effect = [make_response(status=404), make_response(body={"ok": True})]
        fetcher = UpstreamFetcher(session=session, budget=budget)

        with pytest.raises(UpstreamRejected):
            fetcher.fetch(REQUEST)
        assert fetcher.error_count == 1

        assert fetcher.fetch(REQUEST) == {"ok": True}
        assert fetcher.error_count == 0
        assert budget.status()["backoff"]["consecutive_errors"] == 0
