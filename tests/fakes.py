import asyncio
import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from raidwatch.guilds import TrackedGuild
from raidwatch.stats import PlayerTop
from raidwatch.warcraftlogs import (
    Difficulty,
    Report,
    ReportDetails,
    WarcraftLogsClient,
    WarcraftLogsError,
    Zone,
)

MYTHIC_TWENTY = Zone(
    name="Nerub-ar Palace",
    difficulties=(
        Difficulty(name="Heroic", sizes=(10, 30)),
        Difficulty(name="Mythic", sizes=(20,)),
    ),
)


def make_report(
    code: str,
    end_time: int,
    start_time: Optional[int] = None,
    zone: Zone = MYTHIC_TWENTY,
    title: str = "Raid night",
    owner: str = "Raidleader",
) -> Report:
    return Report(
        code=code,
        title=title,
        start_time=start_time if start_time is not None else end_time - 3_600_000,
        end_time=end_time,
        owner_name=owner,
        zone=zone,
    )


def make_guild(guild_id: str = "100", wipe_cutoff: int = 4) -> TrackedGuild:
    return TrackedGuild(
        guild_id=guild_id,
        wcl_guild_id=700000,
        wipe_cutoff=wipe_cutoff,
        channel_id="555",
    )


def make_details(*names: str) -> ReportDetails:
    return ReportDetails(
        top_deaths=[PlayerTop(name, 1) for name in names],
        top_first_deaths=[PlayerTop(name, 1) for name in names[:1]],
    )


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeWarcraftLogs:
    def __init__(
        self,
        reports: Optional[List[Report]] = None,
        details: Optional[Dict[str, ReportDetails]] = None,
        fail_reports: bool = False,
        fail_details: Iterable[str] = (),
        reports_delay: float = 0.0,
    ):
        self.reports = reports or []
        self.details = details or {}
        self.fail_reports = fail_reports
        self.fail_details = set(fail_details)
        self.reports_delay = reports_delay
        self.find_calls: List[Tuple[int, Any]] = []
        self.detail_calls: List[Tuple[str, int]] = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def find_reports(self, guild_id, start_time):
        self.find_calls.append((guild_id, start_time))
        if self.reports_delay:
            await asyncio.sleep(self.reports_delay)
        if self.fail_reports:
            raise WarcraftLogsError("simulated failure", status=503)
        return list(self.reports)

    async def top_deaths_for_report(self, report_code, wipe_cutoff):
        self.detail_calls.append((report_code, wipe_cutoff))
        if report_code in self.fail_details:
            raise WarcraftLogsError("simulated failure", status=502)
        return self.details.get(report_code, ReportDetails())


Responder = Callable[[Dict[str, Any]], Tuple[int, Any]]


class ScriptedClient(WarcraftLogsClient):
    """Client with the HTTP seams replaced by scripted responses."""

    def __init__(self, responder: Responder, fresh_token: bool = True):
        super().__init__("client-id", "client-secret", session=None)
        self.responder = responder
        self.exchange_calls = 0
        self.posts: List[Tuple[str, Dict[str, Any]]] = []
        if fresh_token:
            self._token = "token-0"
            self._expires_at = float("inf")

    async def _exchange_token(self):
        self.exchange_calls += 1
        await asyncio.sleep(0)
        return f"token-{self.exchange_calls}", 3600.0

    async def _post_graphql(self, token, body):
        self.posts.append((token, body))
        await asyncio.sleep(0)
        return self.responder(body)


def queued(*responses: Tuple[int, Any]) -> Responder:
    pending = list(responses)

    def responder(body):
        return pending.pop(0)

    return responder


def events_page(events: List[Any], next_page: Optional[float] = None) -> Dict[str, Any]:
    return {
        "data": {
            "reportData": {
                "report": {
                    "events": {"data": events, "nextPageTimestamp": next_page}
                }
            }
        }
    }


def death(timestamp: int, name: str) -> Dict[str, Any]:
    return {
        "timestamp": timestamp,
        "type": "death",
        "target": {"name": name, "server": "Draenor"},
    }


class FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body

    async def json(self):
        return json.loads(self.body)

    async def text(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, responses: List[FakeResponse]):
        self.responses = list(responses)
        self.requests: List[Tuple[str, Dict[str, Any]]] = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.responses.pop(0)


def report_payload(code: str, end_time: int) -> Dict[str, Any]:
    return {
        "code": code,
        "title": "Raid night",
        "startTime": end_time - 3_600_000,
        "endTime": end_time,
        "owner": {"name": "Raidleader"},
        "zone": {
            "name": "Nerub-ar Palace",
            "difficulties": [{"name": "Mythic", "sizes": [20]}],
        },
    }
