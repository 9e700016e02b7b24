from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Literal, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

EventKind = Literal["track", "non-music", "other"]
Classification = Literal["legitimate", "partial", "mistake"]
ScanDirection = Literal["forward", "backward"]
ScanType = Literal["forward", "backward", "idle"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlayEvent(BaseModel):
    """One aired item as reported by the playlist API."""
    model_config = ConfigDict(frozen=True)

    airdate: datetime
    artist: str = ""
    title: str = ""
    album: Optional[str] = None
    play_id: int
    kind: EventKind = "track"
    show_id: Optional[int] = None
    show_name: Optional[str] = None
    host_id: Optional[int] = None
    host_name: Optional[str] = None
    image_uri: Optional[str] = None
    thumbnail_uri: Optional[str] = None

    @property
    def is_track(self) -> bool:
        return self.kind == "track"


class DoublePlayOccurrence(BaseModel):
    timestamp: datetime
    end_timestamp: Optional[datetime] = None
    play_id: int
    duration: Optional[int] = None  # whole seconds
    event: PlayEvent


class DoublePlayGroup(BaseModel):
    artist: str
    title: str
    occurrences: List[DoublePlayOccurrence] = Field(default_factory=list)  # chronological
    dj: Optional[str] = None
    show: Optional[str] = None
    classification: Optional[Classification] = None

    @property
    def first_timestamp(self) -> datetime:
        return self.occurrences[0].timestamp

    def span(self) -> Tuple[datetime, datetime]:
        return self.occurrences[0].timestamp, self.occurrences[-1].timestamp

    def same_track(self, other: "DoublePlayGroup") -> bool:
        return (self.artist.lower() == other.artist.lower()
                and self.title.lower() == other.title.lower())


class ClassificationCounts(BaseModel):
    legitimate: int = 0
    partial: int = 0
    mistake: int = 0
    total: int = 0

    @classmethod
    def tally(cls, groups: Iterable[DoublePlayGroup]) -> "ClassificationCounts":
        counts = cls()
        for group in groups:
            if group.classification is not None:
                setattr(counts, group.classification, getattr(counts, group.classification) + 1)
            counts.total += 1
        return counts


class ScanStats(BaseModel):
    total_scan_time_ms: int = 0
    total_api_requests: int = 0
    last_scan_duration_ms: int = 0
    last_scan_requests: int = 0
    last_scan_time: Optional[datetime] = None
    scan_direction: Literal["forward", "backward", "mixed"] = "forward"


class DatasetWindow(BaseModel):
    start_time: datetime
    end_time: datetime
    double_plays: List[DoublePlayGroup] = Field(default_factory=list)
    counts: ClassificationCounts = Field(default_factory=ClassificationCounts)
    scan_stats: Optional[ScanStats] = None

    def sort_groups(self):
        self.double_plays.sort(key=lambda g: g.first_timestamp)

    def recount(self):
        self.counts = ClassificationCounts.tally(self.double_plays)

    @property
    def span(self) -> timedelta:
        return self.end_time - self.start_time


class ScanJob(BaseModel):
    """A time window still to be scanned. Consumed one leading chunk at a time."""

    direction: ScanDirection
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def split(self, max_chunk: timedelta) -> Tuple[datetime, Optional["ScanJob"]]:
        """Return the end of the leading chunk and the job covering the remainder, if any."""
        chunk_end = min(self.start + max_chunk, self.end)
        if chunk_end < self.end:
            return chunk_end, ScanJob(direction=self.direction, start=chunk_end, end=self.end)
        return chunk_end, None


class ScanStateSnapshot(BaseModel):
    current_scan_type: ScanType = "idle"
    current_scan_start: Optional[datetime] = None
    current_scan_end: Optional[datetime] = None
    total_requests: int = 0
    forward_requests: int = 0
    backward_requests: int = 0
    current_retry_count: int = 0
    is_running: bool = False
    queue_length: int = 0


class HealthStatus(BaseModel):
    is_healthy: bool = True
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None


class ProgressReport(BaseModel):
    action: str
    direction: ScanType
    percentage: float = 0.0
    eta_seconds: Optional[float] = None
    time_range: str = ""
    requests: int = 0
    queue_length: int = 0
    block_start: Optional[datetime] = None
    block_end: Optional[datetime] = None
