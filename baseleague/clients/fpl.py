# baseleague/clients/fpl.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from ..core.config import FPL_BASE_URL
from ..domain.errors import FeedUnavailable
from ..domain.models import FixtureKey, FixtureRecord, Period, Team

log = logging.getLogger(__name__)


class FixtureFeedClient:
    """
    Read-only accessor for the Fantasy Premier League style fixture feed.

      - fixtures:  GET /fixtures/          -> [{id, event, team_h, team_a, ...}]
      - bootstrap: GET /bootstrap-static/  -> {events: [...], teams: [...]}

    Every failure (network, status, JSON, payload shape) surfaces as
    FeedUnavailable. Nothing is retried here; the next scheduled run does that.
    """

    # ------------ lifecycle ------------
    def __init__(
        self,
        base_url: str = FPL_BASE_URL,
        timeout: float = 10.0,
        *,
        cache_ttl: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base = base_url.rstrip("/")
        self._http = httpx.Client(
            timeout=timeout,
            headers={"User-Agent": "BaseLeague/1.0", "Accept": "application/json"},
            transport=transport,
        )
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._bootstrap_cached: Optional[Tuple[float, Dict[str, Any]]] = None  # (expires_at, payload)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "FixtureFeedClient":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()

    # ------------ low-level helpers ------------
    def _get(self, path: str) -> Any:
        url = f"{self._base}/{path.lstrip('/')}"
        try:
            resp = self._http.get(url)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise FeedUnavailable(f"GET {url} -> {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FeedUnavailable(f"GET {url} failed: {e}") from e
        except ValueError as e:
            raise FeedUnavailable(f"GET {url} returned invalid JSON") from e

    def _bootstrap(self) -> Dict[str, Any]:
        cached = self._bootstrap_cached
        if cached is not None and cached[0] > self._clock():
            return cached[1]
        data = self._get("/bootstrap-static/")
        if not isinstance(data, dict):
            raise FeedUnavailable("bootstrap payload is not an object")
        self._bootstrap_cached = (self._clock() + self._cache_ttl, data)
        return data

    # ------------ fixtures ------------
    def fetch_all_fixtures(self) -> List[FixtureRecord]:
        payload = self._get("/fixtures/")
        if not isinstance(payload, list):
            raise FeedUnavailable("fixtures payload is not an array")
        out: List[FixtureRecord] = []
        for row in payload:
            try:
                out.append(FixtureRecord.model_validate(row))
            except ValidationError as e:
                # one odd row must not hide the rest of the slate
                log.warning("skip fixture row: %s", e.errors()[0].get("msg") if e.errors() else e)
        return out

    # ------------ bootstrap: period + teams ------------
    def fetch_current_period(self) -> int:
        events = self._bootstrap().get("events")
        if not isinstance(events, list):
            raise FeedUnavailable("bootstrap payload has no events array")
        try:
            periods = [Period.model_validate(ev) for ev in events]
        except ValidationError as e:
            raise FeedUnavailable(f"bootstrap events malformed: {e.error_count()} error(s)") from e
        for p in periods:
            if p.is_current:
                return p.id
        for p in periods:
            if not p.finished:
                return p.id
        return 1

    def fetch_teams(self) -> Dict[int, Team]:
        teams = self._bootstrap().get("teams")
        if not isinstance(teams, list):
            raise FeedUnavailable("bootstrap payload has no teams array")
        out: Dict[int, Team] = {}
        for t in teams:
            try:
                team = Team.model_validate(t)
            except ValidationError:
                continue
            out[team.id] = team
        return out

    def clear_cache(self) -> None:
        self._bootstrap_cached = None


def find_fixture(records: Iterable[FixtureRecord], key: FixtureKey) -> Optional[FixtureRecord]:
    for rec in records:
        if rec.id == key.match_id and rec.event == key.gameweek:
            return rec
    return None
