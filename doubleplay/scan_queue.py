import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Deque, List, Optional, Set
from .config import settings
from .engine import DetectionEngine, merge
from .models import DatasetWindow, DoublePlayGroup, ScanDirection, ScanJob, ScanStateSnapshot, utc_now
from .scan_state import ScanStateRecorder
from .storage import DatasetStore, DatasetValidationError

logger = logging.getLogger(__name__)

ScanCompleteCallback = Callable[[ScanDirection, int, int], None]


class MalformedJobError(ValueError):
    """Job bounds missing, naive or inverted. Never retried."""


class UpstreamFetchError(Exception):
    """The playlist fetch for a chunk failed. The only error that goes through the retry policy."""


def describe(job: ScanJob) -> str:
    fmt = "%Y-%m-%d %H:%M"
    start = job.start.strftime(fmt) if isinstance(job.start, datetime) else job.start
    end = job.end.strftime(fmt) if isinstance(job.end, datetime) else job.end
    return f"{start} -> {end}"


def historical_floor(now: datetime, stop: Optional[datetime] = None) -> datetime:
    """How far back backward scanning goes."""
    if stop is not None:
        return stop
    if settings.HISTORICAL_SCAN_STOP_DATE:
        return datetime.combine(settings.HISTORICAL_SCAN_STOP_DATE, datetime.min.time(), tzinfo=timezone.utc)
    return now - timedelta(days=settings.HISTORICAL_LOOKBACK_DAYS)


class ScanQueue:
    """
    Serial queue of forward (catch up to now) and backward (walk into history)
    scan jobs. Each step fetches one bounded chunk of a job, runs detection,
    persists the dataset and re-enqueues whatever is left of the job.
    Forward work always goes to the head of the queue, backward work to the tail.
    """

    def __init__(self,
                 source,
                 engine: DetectionEngine,
                 store: DatasetStore,
                 data: DatasetWindow,
                 state: Optional[ScanStateRecorder] = None,
                 save_handler: Optional[Callable[[], Awaitable[None]]] = None,
                 historical_stop: Optional[datetime] = None,
                 backward_only: bool = False,
                 now: Callable[[], datetime] = utc_now):
        self.source = source
        self.engine = engine
        self.store = store
        self.data = data
        self.state = state or ScanStateRecorder()
        self.save_handler = save_handler
        self.historical_stop = historical_stop
        self.backward_only = backward_only
        self._now = now

        self.queue: Deque[ScanJob] = deque()
        self.running = False
        self.processing = False
        self.backward_complete = False

        self.on_scan_complete: Optional[ScanCompleteCallback] = None
        self.on_backward_complete: Optional[Callable[[], None]] = None
        self.on_stopped: Optional[Callable[[], None]] = None

        self._forward_timer: Optional[asyncio.Task] = None
        self._retry_timers: Set[asyncio.Task] = set()
        self._drain_task: Optional[asyncio.Task] = None

    # Lifecycle

    def start(self):
        self.running = True
        self.state.set_running(True)
        if not self.backward_only:
            self.trigger_forward_scan()
            self._forward_timer = asyncio.create_task(self._periodic_forward_scans())
        self.enqueue_initial_backward()
        self._schedule_drain()

    def stop(self):
        """Stop scheduling work. A chunk already in flight is left to finish."""
        self.running = False
        self.state.set_running(False)
        self.state.set_idle()
        if self._forward_timer:
            self._forward_timer.cancel()
            self._forward_timer = None
        for task in list(self._retry_timers):
            task.cancel()
        self._retry_timers.clear()
        if self.on_stopped:
            self.on_stopped()

    async def join(self):
        """Wait for the active drain loop, if any, to exit."""
        if self._drain_task and not self._drain_task.done():
            await self._drain_task

    def snapshot(self) -> ScanStateSnapshot:
        return self.state.snapshot()

    @property
    def pending_jobs(self) -> List[ScanJob]:
        return list(self.queue)

    def historical_floor(self) -> datetime:
        return historical_floor(self._now(), self.historical_stop)

    # Enqueueing

    def enqueue_forward(self, start: datetime, end: datetime):
        self.queue.appendleft(ScanJob(direction="forward", start=start, end=end))
        self.state.set_queue_length(len(self.queue))

    def enqueue_backward(self, start: datetime, end: datetime):
        self.queue.append(ScanJob(direction="backward", start=start, end=end))
        self.state.set_queue_length(len(self.queue))

    def trigger_forward_scan(self) -> bool:
        """Replace any queued forward job with one covering [dataset end, now]."""
        now = self._now()
        last_end = self.data.end_time
        if last_end >= now:
            return False

        logger.debug(f"Adding forward scan job {last_end.isoformat()} -> {now.isoformat()}")
        self.queue = deque(job for job in self.queue if job.direction != "forward")
        self.enqueue_forward(last_end, now)
        self._schedule_drain()
        return True

    def enqueue_initial_backward(self):
        floor = self.historical_floor()
        start = self.data.start_time
        if start <= floor:
            logger.info(f"No backward scan needed, data already reaches {floor.date().isoformat()}")
            self._signal_backward_complete()
            return

        chunk = timedelta(hours=settings.MAX_HOURS_PER_REQUEST)
        self.enqueue_backward(max(start - chunk, floor), start)
        logger.debug(f"Queued initial backward scan from {start.isoformat()} toward {floor.isoformat()}")

    def enqueue_next_backward(self) -> bool:
        """Queue the next historical chunk below the dataset start. Returns True once the floor is reached."""
        floor = self.historical_floor()
        start = self.data.start_time
        if start <= floor:
            logger.info(f"Backward scan complete - reached historical stop date {floor.date().isoformat()}")
            return True

        if not self._has_backward_job():
            chunk = timedelta(hours=settings.MAX_HOURS_PER_REQUEST)
            self.enqueue_backward(max(start - chunk, floor), start)
        return False

    def _has_backward_job(self) -> bool:
        return any(job.direction == "backward" for job in self.queue)

    def _enqueue_continuation(self, job: ScanJob):
        if job.direction == "forward":
            # A newer trigger may have queued while this chunk was in flight; fold it in
            queued = [q for q in self.queue if q.direction == "forward"]
            if queued:
                self.queue = deque(q for q in self.queue if q.direction != "forward")
                job = ScanJob(direction="forward", start=job.start, end=max([job.end] + [q.end for q in queued]))
            self.queue.appendleft(job)
        elif not self._has_backward_job():
            self.queue.append(job)
        self.state.set_queue_length(len(self.queue))

    # Draining

    def _schedule_drain(self):
        if self.processing or not self.running or not self.queue:
            return
        self.processing = True
        self._drain_task = asyncio.create_task(self._drain())

    async def process_queue(self):
        """Drain the queue in the caller's task. No-op if a drain is already active."""
        if self.processing or not self.running or not self.queue:
            return
        self.processing = True
        await self._drain()

    async def _drain(self):
        try:
            while self.queue and self.running:
                job = self.queue.popleft()
                self.state.set_queue_length(len(self.queue))
                try:
                    await self.process_job(job)
                except MalformedJobError as e:
                    logger.error(f"Rejected malformed {job.direction} scan job: {e}")
                except DatasetValidationError as e:
                    self.state.reset_retry_count()
                    logger.critical(f"Data validation failed - {job.direction} scan {describe(job)} could not be saved. "
                                    f"Scanning continues with the in-memory dataset: {e}")
                    if settings.SAVE_VALIDATION_FATAL:
                        self.stop()
                        raise
                except UpstreamFetchError as e:
                    self._handle_fetch_failure(job, e)
                except Exception as e:
                    logger.critical(f"Non-API error in {job.direction} scan {describe(job)}, continuing with next job: {e}",
                                    exc_info=e)

            if self.running:
                self.state.set_idle()
        finally:
            self.processing = False

    def _handle_fetch_failure(self, job: ScanJob, error: UpstreamFetchError):
        health = self.source.health_status()
        retries = self.state.retry_count
        if retries > settings.RETRY_LOG_THRESHOLD:
            logger.warning(f"Playlist request for {job.direction} scan {describe(job)} failed {retries} times in a row "
                           f"({health.consecutive_failures} consecutive upstream failures): {error}")

        if health.is_healthy:
            logger.error(f"Playlist request for {job.direction} scan {describe(job)} failed while upstream reports healthy, "
                         f"skipping job: {error}")
            return

        if job.direction == "backward":
            delay = settings.RETRY_BASE_DELAY_SECONDS + settings.RETRY_DELAY_PER_FAILURE_SECONDS * health.consecutive_failures
            logger.debug(f"Re-queueing backward scan {describe(job)} in {delay:.0f}s")
            self._schedule_retry(job, delay)
        else:
            logger.debug(f"Forward scan {describe(job)} failed, next periodic trigger will cover it")

    def _schedule_retry(self, job: ScanJob, delay: float):
        async def requeue():
            await asyncio.sleep(delay)
            if self.running:
                self.queue.append(job)
                self.state.set_queue_length(len(self.queue))
                self._schedule_drain()

        task = asyncio.create_task(requeue())
        self._retry_timers.add(task)
        task.add_done_callback(self._retry_timers.discard)

    async def _periodic_forward_scans(self):
        interval = settings.SCAN_INTERVAL_MINUTES * 60
        while self.running:
            await asyncio.sleep(interval)
            if self.running:
                self.trigger_forward_scan()

    # One chunk

    def _validate(self, job: ScanJob):
        if not isinstance(job.start, datetime) or not isinstance(job.end, datetime):
            raise MalformedJobError(f"Invalid job bounds: start={job.start!r}, end={job.end!r}")
        if job.start.tzinfo is None or job.end.tzinfo is None:
            raise MalformedJobError(f"Job bounds must be timezone aware: {describe(job)}")
        if job.start > job.end:
            raise MalformedJobError(f"Invalid time range: start {job.start.isoformat()} is after end {job.end.isoformat()}")

    async def process_job(self, job: ScanJob):
        self._validate(job)

        started = time.monotonic()
        requests_before = self.source.total_requests
        self.state.update_scan_job(job.direction, job.start, job.end)

        chunk_end, remainder = job.split(timedelta(hours=settings.MAX_HOURS_PER_REQUEST))
        logger.debug(f"Scanning {job.direction} chunk {job.start.isoformat()} -> {chunk_end.isoformat()}")

        try:
            events = await self.source.get_all_plays(job.start, chunk_end)
        except Exception as e:
            self.state.increment_retry_count()
            raise UpstreamFetchError(str(e)) from e

        self.state.increment_requests()
        self.state.reset_retry_count()

        groups = await self.engine.detect(events, window_end=chunk_end)
        if groups:
            self._apply(groups)

        if job.direction == "forward":
            self.data.end_time = max(self.data.end_time, chunk_end)
        else:
            self.data.start_time = min(self.data.start_time, job.start)

        reached_floor = False
        if remainder is not None:
            self._enqueue_continuation(remainder)
        elif job.direction == "backward":
            reached_floor = self.enqueue_next_backward()

        try:
            await self._persist()
        finally:
            if reached_floor:
                self._signal_backward_complete()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        requests = self.source.total_requests - requests_before
        if self.on_scan_complete:
            self.on_scan_complete(job.direction, elapsed_ms, requests)

        logger.debug(f"{job.direction} chunk done: {len(events)} plays, {len(groups)} double plays, "
                     f"{len(self.queue)} jobs queued")

    def _apply(self, groups: List[DoublePlayGroup]):
        self.data.double_plays = merge(self.data.double_plays, groups)
        self.data.sort_groups()
        self.data.recount()
        for group in groups:
            logger.info(f"Double play detected: {group.artist} - {group.title} "
                        f"({len(group.occurrences)} plays, {group.classification})")

    async def _persist(self):
        if settings.DRY_RUN:
            logger.debug("Dry run, skipping save")
            return
        if self.save_handler:
            await self.save_handler()
        else:
            self.store.save(self.data)

    def _signal_backward_complete(self):
        if self.backward_complete:
            return
        self.backward_complete = True
        if self.on_backward_complete:
            self.on_backward_complete()
