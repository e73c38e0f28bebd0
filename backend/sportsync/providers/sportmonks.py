"""
backend/sportsync/providers/sportmonks.py

Purpose:
    Sportmonks v3 provider client for the reference entities reconciled by the
    sync engine. Fetches paginated endpoints, logs rate-limit headers and
    normalizes payload rows into flat snake_case records keyed by external_id.

Dependencies:
    - httpx (via sportsync.providers.http_client)
    - sportsync.config
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qsl, urlsplit

from sportsync.config import settings
from sportsync.providers.base import ProviderClient
from sportsync.providers.http_client import ResilientClient

logger = logging.getLogger("sportsync.sportmonks")

FULLTIME_SCORE_TYPE_ID = 1525

_FIXTURE_INCLUDES = "participants;league.country;stage;round;state;scores"
_ODDS_INCLUDES = "odds.bookmaker;odds.market"

_STATE_MAP: dict[str, str] = {
    "ns": "NS",
    "not_started": "NS",
    "tba": "NS",
    "pre_match": "NS",
    "postp": "NS",
    "postponed": "NS",
    "delayed": "NS",
    "ht": "LIVE",
    "half_time": "LIVE",
    "break": "LIVE",
    "et": "LIVE",
    "pen_live": "LIVE",
    "inplay_1st_half": "LIVE",
    "inplay_2nd_half": "LIVE",
    "inplay_et": "LIVE",
    "inplay_penalties": "LIVE",
    "1st": "LIVE",
    "2nd": "LIVE",
    "ft": "FT",
    "finished": "FT",
    "aet": "FT",
    "ft_pen": "FT",
    "ftp": "FT",
    "awarded": "FT",
    "wo": "FT",
    "can": "CAN",
    "cancelled": "CAN",
    "canc": "CAN",
    "int": "INT",
    "interrupted": "INT",
    "aban": "INT",
    "abandoned": "INT",
    "susp": "INT",
    "suspended": "INT",
}


class SportmonksFetchError(RuntimeError):
    """Raised for non-2xx responses or unexpected payload shapes."""


def _to_int(value: Any) -> int | None:
    try:
        if value is None or isinstance(value, bool):
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def map_state(state: dict[str, Any] | None) -> str | None:
    """Collapse Sportmonks state codes into NS/LIVE/FT/CAN/INT."""
    if not isinstance(state, dict):
        return None
    for candidate in (state.get("developer_name"), state.get("short_name"), state.get("state")):
        code = str(candidate or "").strip().lower()
        if not code:
            continue
        if code in _STATE_MAP:
            return _STATE_MAP[code]
        if "1st" in code or "2nd" in code or code.startswith("inplay"):
            return "LIVE"
    fallback = _text(state.get("short_name") or state.get("developer_name"))
    return fallback.upper() if fallback else None


def pick_fulltime_score(scores: list[dict[str, Any]] | None) -> tuple[int | None, int | None]:
    home: int | None = None
    away: int | None = None
    for row in scores or []:
        if _to_int(row.get("type_id")) != FULLTIME_SCORE_TYPE_ID:
            continue
        score = row.get("score") or {}
        side = str(score.get("participant") or "").strip().lower()
        goals = _to_int(score.get("goals"))
        if side == "home":
            home = goals
        elif side == "away":
            away = goals
    return home, away


def extract_participants(participants: list[dict[str, Any]] | None) -> tuple[int | None, int | None]:
    home_id: int | None = None
    away_id: int | None = None
    for participant in participants or []:
        location = str(((participant.get("meta") or {}).get("location")) or "").strip().lower()
        if location == "home":
            home_id = _to_int(participant.get("id"))
        elif location == "away":
            away_id = _to_int(participant.get("id"))
    return home_id, away_id


def normalize_country(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "external_id": _to_int(row.get("id")),
        "name": _text(row.get("name")),
        "iso2": _text(row.get("iso2")),
        "iso3": _text(row.get("iso3")),
        "image_path": _text(row.get("image_path")),
        "continent_external_id": _to_int(row.get("continent_id")),
    }


def normalize_league(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "external_id": _to_int(row.get("id")),
        "name": _text(row.get("name")),
        "image_path": _text(row.get("image_path")),
        "type": _text(row.get("type")),
        "short_code": _text(row.get("short_code")),
        "country_external_id": _to_int(row.get("country_id")),
    }


def normalize_season(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "external_id": _to_int(row.get("id")),
        "name": _text(row.get("name")),
        "starting_at": _text(row.get("starting_at")),
        "ending_at": _text(row.get("ending_at")),
        "is_current": bool(row.get("is_current")),
        "league_external_id": _to_int(row.get("league_id")),
    }


def normalize_team(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "external_id": _to_int(row.get("id")),
        "name": _text(row.get("name")),
        "short_code": _text(row.get("short_code")),
        "image_path": _text(row.get("image_path")),
        "type": _text(row.get("type")),
        "founded": _to_int(row.get("founded")),
        "country_external_id": _to_int(row.get("country_id")),
    }


def normalize_bookmaker(row: dict[str, Any]) -> dict[str, Any]:
    return {"external_id": _to_int(row.get("id")), "name": _text(row.get("name"))}


def normalize_fixture(row: dict[str, Any]) -> dict[str, Any] | None:
    """Fixture record, or None when home/away participants are missing."""
    home_id, away_id = extract_participants(row.get("participants"))
    if home_id is None or away_id is None:
        return None
    home_score, away_score = pick_fulltime_score(row.get("scores"))
    result = None
    if home_score is not None and away_score is not None:
        result = f"{home_score}-{away_score}"
    league = row.get("league") or {}
    return {
        "external_id": _to_int(row.get("id")),
        "name": _text(row.get("name")),
        "starting_at": _text(row.get("starting_at")),
        "state": map_state(row.get("state")),
        "result": result,
        "home_score": home_score,
        "away_score": away_score,
        "league_external_id": _to_int(row.get("league_id")),
        "season_external_id": _to_int(row.get("season_id")),
        "home_team_external_id": home_id,
        "away_team_external_id": away_id,
        "stage": _text((row.get("stage") or {}).get("name")),
        "round": _text((row.get("round") or {}).get("name")),
        "has_odds": bool(row.get("has_odds")),
        "league_name": _text(league.get("name")),
        "country_name": _text((league.get("country") or {}).get("name")),
    }


def normalize_odds(fixture: dict[str, Any]) -> list[dict[str, Any]]:
    """One record per odd of a fixture payload fetched with odds includes."""
    rows: list[dict[str, Any]] = []
    for odd in fixture.get("odds") or []:
        rows.append(
            {
                "external_id": _to_int(odd.get("id")),
                "label": _text(odd.get("label")),
                "value": _text(odd.get("value")),
                "winning": bool(odd.get("winning")),
                "probability": _text(odd.get("probability")),
                "total": _text(odd.get("total")),
                "handicap": _text(odd.get("handicap")),
                "sort_order": _to_int(odd.get("sort_order")),
                "market_external_id": _to_int(odd.get("market_id")),
                "market_name": _text((odd.get("market") or {}).get("name")),
                "bookmaker_external_id": _to_int(odd.get("bookmaker_id")),
                "bookmaker_name": _text((odd.get("bookmaker") or {}).get("name")),
                "fixture_external_id": _to_int(fixture.get("id")),
                "fixture_name": _text(fixture.get("name")),
                "starting_at": _text(fixture.get("starting_at")),
            }
        )
    return rows


class SportmonksProvider(ProviderClient):
    """HTTP adapter for the Sportmonks v3 reference endpoints."""

    def __init__(self, client: ResilientClient | None = None) -> None:
        self._client = client or ResilientClient(
            "sportmonks",
            timeout=settings.SPORTMONKS_TIMEOUT_SECONDS,
            max_retries=settings.SPORTMONKS_MAX_RETRIES,
            base_delay=settings.SPORTMONKS_RETRY_BASE_DELAY,
        )
        self._fetchers: dict[str, Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]]]]] = {
            "countries": self._fetch_countries,
            "leagues": self._fetch_leagues,
            "seasons": self._fetch_seasons,
            "teams": self._fetch_teams,
            "bookmakers": self._fetch_bookmakers,
            "fixtures": self._fetch_fixtures,
            "odds": self._fetch_odds,
        }

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit_open

    def _build_url(self, path: str) -> str:
        base = str(settings.SPORTMONKS_BASE_URL or "").rstrip("/")
        suffix = str(path or "").lstrip("/")
        if not base:
            raise ValueError("SPORTMONKS_BASE_URL is missing.")
        return f"{base}/{suffix}"

    def _auth_token(self) -> str:
        api_key = str(settings.SM_API_KEY or "").strip()
        if not api_key:
            raise ValueError("SM_API_KEY is missing.")
        return api_key

    async def _get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self._build_url(path)
        logger.info("Sportmonks API call: GET /%s", str(path).lstrip("/"))
        response = await self._client.get(
            url,
            params=dict(params or {}),
            headers={"Authorization": self._auth_token()},
        )
        if int(getattr(response, "status_code", 0) or 0) >= 400:
            raise SportmonksFetchError(f"Sportmonks GET /{path} failed with HTTP {response.status_code}")
        payload = response.json() if response.content else {}
        remaining = _to_int(response.headers.get("X-RateLimit-Remaining"))
        if remaining is None:
            remaining = _to_int(((payload or {}).get("rate_limit") or {}).get("remaining"))
        if remaining is not None:
            logger.debug("Sportmonks rate limit remaining=%s", remaining)
        if not isinstance(payload, dict):
            raise SportmonksFetchError(f"Sportmonks GET /{path} returned a non-object payload")
        return payload

    async def _get_paginated(self, path: str, *, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        merged: list[dict[str, Any]] = []
        base_params: dict[str, Any] = dict(params or {})
        base_params.setdefault("per_page", settings.SPORTMONKS_PER_PAGE)
        current_page = _to_int(base_params.get("page")) or 1
        seen_pages: set[int] = set()
        page_guard = 0
        while True:
            page_guard += 1
            if page_guard > settings.SPORTMONKS_MAX_PAGES:
                logger.warning("Sportmonks pagination guard hit for %s", path)
                break
            if current_page in seen_pages:
                logger.warning(
                    "Sportmonks pagination repeated page=%s for %s; stopping to prevent loop",
                    current_page,
                    path,
                )
                break
            seen_pages.add(current_page)
            request_params = dict(base_params)
            request_params["page"] = current_page
            payload = await self._get(path, params=request_params)
            rows = payload.get("data") or []
            if isinstance(rows, list):
                merged.extend(row for row in rows if isinstance(row, dict))
            pagination = payload.get("pagination") or {}
            if not pagination.get("has_more"):
                break
            next_page_num = self._extract_page_number(str(pagination.get("next_page") or "").strip())
            if next_page_num is None or next_page_num <= current_page:
                next_page_num = current_page + 1
            current_page = next_page_num
        return merged

    @staticmethod
    def _extract_page_number(next_page_url: str | None) -> int | None:
        if not next_page_url:
            return None
        value = dict(parse_qsl(urlsplit(next_page_url).query, keep_blank_values=False)).get("page")
        return _to_int(value)

    async def fetch(self, entity_type: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        fetcher = self._fetchers.get(entity_type)
        if fetcher is None:
            raise ValueError(f"Sportmonks provider does not serve entity type '{entity_type}'.")
        records = await fetcher(dict(filters or {}))
        logger.info("Sportmonks fetched %d %s record(s)", len(records), entity_type)
        return records

    async def _fetch_countries(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [normalize_country(row) for row in await self._get_paginated("core/countries")]

    async def _fetch_leagues(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        country_id = filters.get("country_external_id")
        path = f"football/leagues/countries/{int(country_id)}" if country_id else "football/leagues"
        return [normalize_league(row) for row in await self._get_paginated(path)]

    async def _fetch_seasons(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        league_id = filters.get("league_external_id")
        if league_id:
            params["filters"] = f"seasonLeagues:{int(league_id)}"
        return [normalize_season(row) for row in await self._get_paginated("football/seasons", params=params)]

    async def _fetch_teams(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        country_id = filters.get("country_external_id")
        path = f"football/teams/countries/{int(country_id)}" if country_id else "football/teams"
        rows = await self._get_paginated(path)
        return [normalize_team(row) for row in rows if not row.get("placeholder")]

    async def _fetch_bookmakers(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [normalize_bookmaker(row) for row in await self._get_paginated("odds/bookmakers")]

    async def _fetch_fixtures(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"include": _FIXTURE_INCLUDES}
        league_id = filters.get("league_external_id")
        if league_id:
            params["filters"] = f"fixtureLeagues:{int(league_id)}"
        path = f"football/fixtures/between/{filters['from']}/{filters['to']}"
        records: list[dict[str, Any]] = []
        skipped = 0
        for row in await self._get_paginated(path, params=params):
            record = normalize_fixture(row)
            if record is None:
                skipped += 1
                continue
            records.append(record)
        if skipped:
            logger.warning("Skipped %d Sportmonks fixture(s) without home/away participants", skipped)
        return records

    async def _fetch_odds(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        fixture_id = int(filters["fixture_external_id"])
        payload = await self._get(f"football/fixtures/{fixture_id}", params={"include": _ODDS_INCLUDES})
        fixture = payload.get("data") or {}
        if not isinstance(fixture, dict):
            raise SportmonksFetchError(f"Sportmonks fixture {fixture_id} payload is not an object")
        return normalize_odds(fixture)

    async def aclose(self) -> None:
        await self._client.aclose()
