import asyncio
import logging
import time
import httpx
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from ..config import settings
from ..models import EventKind, HealthStatus, PlayEvent

logger = logging.getLogger(__name__)

PLAY_TYPE_KINDS: Dict[str, EventKind] = {
    "trackplay": "track",
    "airbreak": "non-music",
}


class KexpApiError(Exception):
    """Transient upstream failure (network, HTTP status, timeout)."""


def _format_instant(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_play(result: Dict[str, Any]) -> Optional[PlayEvent]:
    try:
        return PlayEvent(
            airdate=result["airdate"],
            artist=result.get("artist") or "",
            title=result.get("song") or "",
            album=result.get("album"),
            play_id=result["id"],
            kind=PLAY_TYPE_KINDS.get(result.get("play_type"), "other"),
            show_id=result.get("show"),
            image_uri=result.get("image_uri"),
            thumbnail_uri=result.get("thumbnail_uri"),
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.debug(f"Skipping malformed play {result.get('id') if isinstance(result, dict) else result!r}: {e}")
        return None


class KexpClient:
    """
    Playlist API client. All requests go through one shared cooldown and an
    exponential backoff that grows with consecutive failures.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=settings.API_BASE_URL.rstrip('/'),
            headers={"User-Agent": settings.USER_AGENT, "Accept": "application/json"},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport
        )
        self.show_cache: Dict[int, Dict[str, Any]] = {}
        self.total_requests = 0
        self.consecutive_failures = 0
        self.last_failure_time: Optional[float] = None
        self.is_healthy = True
        self._last_request_time = 0.0
        self._lock = asyncio.Lock()

    def health_status(self) -> HealthStatus:
        return HealthStatus(
            is_healthy=self.is_healthy,
            consecutive_failures=self.consecutive_failures,
            last_failure_time=self.last_failure_time
        )

    def backoff_delay(self) -> float:
        if self.consecutive_failures <= 0:
            return 0.0
        delay = settings.BACKOFF_BASE_SECONDS * (2 ** min(self.consecutive_failures - 1, 6))
        return min(delay, settings.BACKOFF_MAX_SECONDS)

    async def _wait_turn(self):
        if self.consecutive_failures > 0 and self.last_failure_time is not None:
            remaining = self.backoff_delay() - (time.monotonic() - self.last_failure_time)
            if remaining > 0:
                logger.debug(f"API backoff in effect for {remaining:.1f}s after {self.consecutive_failures} failures")
                await asyncio.sleep(remaining)

        since_last = time.monotonic() - self._last_request_time
        cooldown = settings.RATE_LIMIT_DELAY_MS / 1000.0
        if since_last < cooldown:
            await asyncio.sleep(cooldown - since_last)

    async def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        async with self._lock:
            await self._wait_turn()
            self._last_request_time = time.monotonic()
            try:
                resp = await self.client.get(url, params=params)
                self.total_requests += 1
                resp.raise_for_status()
                data = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                self.consecutive_failures += 1
                self.last_failure_time = time.monotonic()
                self.is_healthy = False
                # The scan queue decides when failures are worth a log line
                logger.debug(f"API request failed ({self.consecutive_failures} consecutive): {e}")
                raise KexpApiError(str(e)) from e

            self.consecutive_failures = 0
            self.last_failure_time = None
            self.is_healthy = True
            return data

    async def get_all_plays(self, start: datetime, end: datetime) -> List[PlayEvent]:
        """Every play of any kind aired in [start, end], following pagination."""
        plays: List[PlayEvent] = []
        url = "/plays/"
        params: Optional[Dict[str, str]] = {
            "airdate_after": _format_instant(start),
            "airdate_before": _format_instant(end),
            "ordering": "airdate",
        }
        seen_urls = set()
        pages = 0

        while url:
            pages += 1
            data = await self._get(url, params=params)
            if not isinstance(data, dict):
                logger.debug(f"Unexpected playlist response shape {type(data).__name__}, stopping pagination")
                break

            results = data.get("results") or []
            for result in results:
                play = parse_play(result)
                if play is not None:
                    plays.append(play)

            seen_urls.add(url)
            next_url = data.get("next")
            params = None  # the next link carries its own query

            if not results:
                break
            if next_url in seen_urls:
                logger.debug("Breaking pagination on a repeated next URL")
                break
            if pages >= settings.MAX_PAGES_PER_FETCH:
                logger.warning(f"Breaking pagination after {pages} pages")
                break
            url = next_url

        logger.debug(f"Fetched {len(plays)} plays in {pages} pages for {start.isoformat()} -> {end.isoformat()}")
        return plays

    async def get_show_info(self, show_id: int) -> Dict[str, Any]:
        if show_id in self.show_cache:
            return self.show_cache[show_id]
        data = await self._get(f"/shows/{show_id}/")
        self.show_cache[show_id] = data
        return data

    async def enrich_show_info(self, play: PlayEvent) -> PlayEvent:
        """Fill in show and host names. Lookup failures leave the play as it was."""
        if not play.show_id:
            return play

        try:
            info = await self.get_show_info(play.show_id)
        except KexpApiError as e:
            logger.debug(f"Failed to fetch show {play.show_id}: {e}")
            return play
        if not isinstance(info, dict):
            return play

        update: Dict[str, Any] = {"show_name": info.get("program_name") or "Unknown Show"}
        host_names = info.get("host_names") or []
        if host_names:
            hosts = info.get("hosts") or [0]
            update["host_name"] = host_names[0]
            update["host_id"] = hosts[0]
        return play.model_copy(update=update)

    async def close(self):
        await self.client.aclose()
        self.show_cache.clear()
