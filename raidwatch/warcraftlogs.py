import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .stats import DeathTally, PlayerTop

TOKEN_URL = "https://www.warcraftlogs.com/oauth/token"
GRAPHQL_URL = "https://www.warcraftlogs.com/api/v2/client"

TOKEN_SKEW = 60.0
REPORTS_LIMIT = 10
EVENTS_PAGE_LIMIT = 1000
MAX_EVENT_PAGES = 10

PAYLOAD_ERRORS = (AttributeError, KeyError, TypeError, ValueError)

LOGGER = logging.getLogger(__name__)

FIND_REPORTS_QUERY = """
query($guildID: Int!, $limit: Int!, $startTime: Float!) {
  reportData {
    reports(guildID: $guildID, limit: $limit, startTime: $startTime) {
      data {
        code
        title
        startTime
        endTime
        owner {
          name
        }
        zone {
          name
          difficulties {
            name
            sizes
          }
        }
      }
    }
  }
}"""

BOSS_FIGHTS_QUERY = """
query($code: String!) {
  reportData {
    report(code: $code) {
      fights(killType: Encounters) {
        id
        encounterID
        name
        startTime
        endTime
        difficulty
        kill
      }
    }
  }
}"""

DEATH_EVENTS_QUERY = """
query($code: String!, $fightId: Int!, $wipeCutoff: Int!, $startTime: Float) {
  reportData {
    report(code: $code) {
      events(
        dataType: Deaths
        hostilityType: Friendlies
        killType: Encounters
        fightIDs: [$fightId]
        limit: %d
        useAbilityIDs: true
        useActorIDs: false
        wipeCutoff: $wipeCutoff
        startTime: $startTime
      ) {
        data
        nextPageTimestamp
      }
    }
  }
}""" % EVENTS_PAGE_LIMIT


class WarcraftLogsError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Difficulty:
    name: str
    sizes: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Zone:
    name: str = ""
    difficulties: Tuple[Difficulty, ...] = ()


@dataclass(frozen=True)
class Report:
    code: str
    title: str
    start_time: int
    end_time: int
    owner_name: str = ""
    zone: Zone = field(default_factory=Zone)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Report":
        zone_data = payload.get("zone") or {}
        difficulties = tuple(
            Difficulty(
                name=str(item.get("name") or ""),
                sizes=tuple(int(size) for size in item.get("sizes") or []),
            )
            for item in zone_data.get("difficulties") or []
        )
        return cls(
            code=str(payload["code"]),
            title=str(payload.get("title") or ""),
            start_time=int(payload.get("startTime") or 0),
            end_time=int(payload.get("endTime") or 0),
            owner_name=str((payload.get("owner") or {}).get("name") or ""),
            zone=Zone(name=str(zone_data.get("name") or ""), difficulties=difficulties),
        )


@dataclass(frozen=True)
class Fight:
    id: int
    encounter_id: int
    name: str
    start_time: int
    end_time: int
    difficulty: Optional[int] = None
    kill: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Fight":
        return cls(
            id=int(payload["id"]),
            encounter_id=int(payload.get("encounterID") or 0),
            name=str(payload.get("name") or ""),
            start_time=int(payload.get("startTime") or 0),
            end_time=int(payload.get("endTime") or 0),
            difficulty=payload.get("difficulty"),
            kill=bool(payload.get("kill")),
        )


@dataclass(frozen=True)
class DeathEvent:
    timestamp: int
    type: str = "death"
    target_name: str = ""
    target_server: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "DeathEvent":
        if not isinstance(payload, dict):
            raise ValueError(f"event is not an object: {payload!r}")
        timestamp = payload["timestamp"]
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError(f"invalid event timestamp: {timestamp!r}")
        target = payload.get("target") or {}
        if not isinstance(target, dict):
            raise ValueError(f"invalid event target: {target!r}")
        return cls(
            timestamp=int(timestamp),
            type=str(payload.get("type") or ""),
            target_name=str(target.get("name") or ""),
            target_server=str(target.get("server") or ""),
        )


@dataclass
class ReportDetails:
    top_deaths: List[PlayerTop] = field(default_factory=list)
    top_first_deaths: List[PlayerTop] = field(default_factory=list)


class WarcraftLogsClient:
    """Warcraft Logs v2 API client.

    One instance is shared by every guild loop. The OAuth token is refreshed
    lazily under ``_token_lock`` so that concurrent callers seeing an
    expiring token collapse into a single exchange.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        session: aiohttp.ClientSession | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._session = session
        self._owns_session = session is None
        self._token = ""
        self._expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def start(self):
        await self.refresh_token()

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30)
            )
        return self._session

    def _token_is_fresh(self) -> bool:
        return bool(self._token) and time.monotonic() + TOKEN_SKEW < self._expires_at

    async def ensure_token(self):
        if self._token_is_fresh():
            return
        await self.refresh_token()

    async def refresh_token(self, stale_token: str | None = None):
        """Exchange client credentials for a new token.

        Without ``stale_token`` nothing happens while the current token is
        still fresh. With it, the exchange is forced unless another task has
        already replaced that token.
        """
        async with self._token_lock:
            if stale_token is None:
                if self._token_is_fresh():
                    return
            elif self._token and self._token != stale_token:
                return
            token, expires_in = await self._exchange_token()
            self._token = token
            self._expires_at = time.monotonic() + expires_in
            LOGGER.info("Acquired Warcraft Logs token valid for %ss", int(expires_in))

    async def _exchange_token(self) -> Tuple[str, float]:
        session = self._get_session()
        try:
            async with session.post(
                TOKEN_URL,
                auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise WarcraftLogsError(
                        f"oauth token failed: {resp.status}: {body}", resp.status
                    )
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise WarcraftLogsError(f"oauth token failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise WarcraftLogsError("oauth token failed: malformed response")
        token = str(payload.get("access_token") or "")
        if not token:
            raise WarcraftLogsError("oauth token failed: empty access_token")
        return token, float(payload.get("expires_in") or 0)

    async def _post_graphql(
        self, token: str, body: Dict[str, Any]
    ) -> Tuple[int, Any]:
        session = self._get_session()
        try:
            async with session.post(
                GRAPHQL_URL,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            ) as resp:
                if resp.status >= 400:
                    return resp.status, await resp.text()
                return resp.status, await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise WarcraftLogsError(f"graphql request failed: {exc}") from exc

    async def query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        await self.ensure_token()
        body = {"query": query, "variables": variables}

        token = self._token
        status, payload = await self._post_graphql(token, body)
        if status == 401:
            try:
                await self.refresh_token(stale_token=token)
            except WarcraftLogsError as exc:
                raise WarcraftLogsError(
                    f"token refresh after 401 failed: {exc}", exc.status
                ) from exc
            status, payload = await self._post_graphql(self._token, body)

        if status >= 400:
            raise WarcraftLogsError(f"graphql {status}: {payload}", status)
        if not isinstance(payload, dict):
            raise WarcraftLogsError("graphql: malformed response", status)
        errors = payload.get("errors") or []
        if errors:
            first = errors[0]
            message = first.get("message") if isinstance(first, dict) else first
            raise WarcraftLogsError(f"graphql error: {message}", status)
        data = payload.get("data")
        if not data:
            raise WarcraftLogsError("graphql: empty data", status)
        return data

    async def find_reports(self, guild_id: int, start_time: datetime) -> List[Report]:
        variables = {
            "guildID": guild_id,
            "limit": REPORTS_LIMIT,
            "startTime": float(int(start_time.timestamp() * 1000)),
        }
        data = await self.query(FIND_REPORTS_QUERY, variables)
        try:
            reports = ((data.get("reportData") or {}).get("reports") or {}).get("data")
            return [Report.from_payload(item) for item in reports or []]
        except PAYLOAD_ERRORS as exc:
            raise WarcraftLogsError(f"malformed reports payload: {exc!r}") from exc

    async def get_boss_fights(self, report_code: str) -> List[Fight]:
        data = await self.query(BOSS_FIGHTS_QUERY, {"code": report_code})
        try:
            report = (data.get("reportData") or {}).get("report") or {}
            return [Fight.from_payload(item) for item in report.get("fights") or []]
        except PAYLOAD_ERRORS as exc:
            raise WarcraftLogsError(
                f"malformed fights payload for {report_code}: {exc!r}"
            ) from exc

    async def get_death_events(
        self, report_code: str, fight_id: int, wipe_cutoff: int
    ) -> List[DeathEvent]:
        deaths: List[DeathEvent] = []
        page_timestamp: float | None = None
        page_count = 0
        while True:
            variables: Dict[str, Any] = {
                "code": report_code,
                "fightId": fight_id,
                "wipeCutoff": wipe_cutoff,
            }
            if page_timestamp is not None:
                variables["startTime"] = page_timestamp

            data = await self.query(DEATH_EVENTS_QUERY, variables)
            try:
                report = (data.get("reportData") or {}).get("report") or {}
                events = report.get("events") or {}
                raw_events = list(events.get("data") or [])
                next_page = events.get("nextPageTimestamp")
                if next_page is not None:
                    next_page = float(next_page)
            except PAYLOAD_ERRORS as exc:
                raise WarcraftLogsError(
                    f"malformed events page for {report_code} fight {fight_id}: {exc!r}"
                ) from exc

            for raw in raw_events:
                try:
                    deaths.append(DeathEvent.from_payload(raw))
                except (KeyError, TypeError, ValueError) as exc:
                    LOGGER.warning(
                        "Skipping malformed death event in %s fight %s: %s",
                        report_code,
                        fight_id,
                        exc,
                    )

            if next_page is None:
                break
            page_timestamp = next_page

            page_count += 1
            if page_count >= MAX_EVENT_PAGES:
                LOGGER.warning(
                    "Pagination aborted for %s fight %s: exceeded %s pages",
                    report_code,
                    fight_id,
                    MAX_EVENT_PAGES,
                )
                break

        deaths.sort(key=lambda ev: ev.timestamp)
        return deaths

    async def top_deaths_for_report(
        self, report_code: str, wipe_cutoff: int
    ) -> ReportDetails:
        fights = await self.get_boss_fights(report_code)
        if not fights:
            return ReportDetails()

        tally = DeathTally()
        for fight in fights:
            try:
                events = await self.get_death_events(report_code, fight.id, wipe_cutoff)
            except WarcraftLogsError as exc:
                raise WarcraftLogsError(
                    f"events for fight {fight.id}: {exc}", exc.status
                ) from exc
            tally.add_fight(ev.target_name for ev in events)

        return ReportDetails(
            top_deaths=tally.top_deaths(),
            top_first_deaths=tally.top_first_deaths(),
        )
