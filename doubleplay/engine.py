import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple
from .config import settings
from .models import Classification, DoublePlayGroup, DoublePlayOccurrence, PlayEvent

logger = logging.getLogger(__name__)

MISTAKE_MAX_SECONDS = 30
PARTIAL_MAX_GAP_SECONDS = 60
PARTIAL_DURATION_DIFF_PCT = 10


def filter_out_of_order(events: Sequence[PlayEvent]) -> Tuple[List[PlayEvent], int]:
    """
    Walk events in play_id order and drop any whose airdate goes backwards
    relative to the latest airdate already accepted.
    Returns (kept, dropped_count).
    """
    kept: List[PlayEvent] = []
    latest: Optional[datetime] = None
    dropped = 0
    for event in sorted(events, key=lambda e: e.play_id):
        if latest is None or event.airdate >= latest:
            kept.append(event)
            latest = event.airdate
        else:
            dropped += 1
            logger.debug(f"Dropped play {event.play_id} ({event.artist} - {event.title}) "
                         f"with backwards airdate {event.airdate.isoformat()}")

    if dropped:
        logger.info(f"Filtered {dropped} of {len(events)} plays with backwards timestamps")
    return kept, dropped


def is_same_track(a: PlayEvent, b: PlayEvent) -> bool:
    return (a.artist.lower() == b.artist.lower()
            and a.title.lower() == b.title.lower()
            and (a.album or "").lower() == (b.album or "").lower())


def classify(occurrences: Sequence[DoublePlayOccurrence]) -> Classification:
    if len(occurrences) < 2:
        return "legitimate"

    first, second = occurrences[0], occurrences[1]

    if all(o.duration is not None for o in occurrences):
        if first.duration < MISTAKE_MAX_SECONDS:
            # Accidental short first play
            return "mistake"
        longest = max(first.duration, second.duration)
        shortest = min(first.duration, second.duration)
        pct_difference = (longest - shortest) / longest * 100
        if pct_difference > PARTIAL_DURATION_DIFF_PCT:
            return "partial"
        return "legitimate"

    # No durations: fall back to the gap between the first two starts
    gap = round((second.timestamp - first.timestamp).total_seconds())
    if gap < MISTAKE_MAX_SECONDS:
        return "mistake"
    if gap < PARTIAL_MAX_GAP_SECONDS:
        return "partial"
    return "legitimate"


def _overlaps(a: DoublePlayGroup, b: DoublePlayGroup) -> bool:
    a_start, a_end = a.span()
    b_start, b_end = b.span()
    return a_start <= b_end and a_end >= b_start


def merge(existing: Sequence[DoublePlayGroup], incoming: Sequence[DoublePlayGroup]) -> List[DoublePlayGroup]:
    """
    Fold newly detected groups into an existing collection.
    Overlapping groups for the same track are unioned by play_id, so rescanning
    a window never duplicates occurrences. Inputs are left untouched.
    """
    merged = list(existing)

    for group in incoming:
        idx = next((i for i, g in enumerate(merged) if g.same_track(group) and _overlaps(g, group)), None)
        if idx is None:
            merged.append(group.model_copy(deep=True))
            continue

        target = merged[idx].model_copy(deep=True)
        known_ids = {o.play_id for o in target.occurrences}
        for occurrence in group.occurrences:
            if occurrence.play_id not in known_ids:
                target.occurrences.append(occurrence.model_copy(deep=True))
                known_ids.add(occurrence.play_id)
        target.occurrences.sort(key=lambda o: o.timestamp)

        if not target.dj and group.dj:
            target.dj = group.dj
        if not target.show and group.show:
            target.show = group.show

        target.classification = classify(target.occurrences)
        merged[idx] = target

    return merged


class DetectionEngine:
    """
    Finds runs of the same track aired back to back (ignoring interstitials)
    in one polling window. The optional source is only used to resolve the
    end of a play sitting on the window boundary and to look up show/host
    names once a group is confirmed.
    """

    def __init__(self, source=None):
        self.source = source

    async def detect(self, events: Sequence[PlayEvent], window_end: Optional[datetime] = None) -> List[DoublePlayGroup]:
        filtered, _ = filter_out_of_order(events)
        timeline = sorted(filtered, key=lambda e: e.airdate)

        groups: List[DoublePlayGroup] = []
        i = 0
        while i < len(timeline):
            current = timeline[i]
            if not current.is_track or not current.artist or not current.title:
                i += 1
                continue

            run = [i]
            j = i + 1
            while j < len(timeline):
                candidate = timeline[j]
                if candidate.is_track and is_same_track(current, candidate):
                    run.append(j)
                    j += 1
                elif not candidate.is_track:
                    # Air breaks and other interstitials don't end a run
                    j += 1
                else:
                    break

            if len(run) < 2:
                i += 1
                continue

            group = await self._build_group(timeline, run, window_end)
            logger.debug(f"Double play found: {group.artist} - {group.title} x{len(group.occurrences)} ({group.classification})")
            groups.append(group)
            i = j

        return groups

    async def _build_group(self, timeline: List[PlayEvent], run: List[int], window_end: Optional[datetime]) -> DoublePlayGroup:
        occurrences = []
        for idx in run:
            event = timeline[idx]
            if idx + 1 < len(timeline):
                end = timeline[idx + 1].airdate
            else:
                end = await self._resolve_boundary(event, window_end)

            duration = round((end - event.airdate).total_seconds()) if end is not None else None
            occurrences.append(DoublePlayOccurrence(
                timestamp=event.airdate,
                end_timestamp=end,
                play_id=event.play_id,
                duration=duration,
                event=event
            ))

        first = await self._enrich(timeline[run[0]])
        return DoublePlayGroup(
            artist=first.artist,
            title=first.title,
            occurrences=occurrences,
            dj=first.host_name,
            show=first.show_name,
            classification=classify(occurrences)
        )

    async def _resolve_boundary(self, event: PlayEvent, window_end: Optional[datetime]) -> Optional[datetime]:
        if window_end is None or self.source is None:
            logger.debug(f"No end timestamp for boundary play {event.play_id}, duration left unset")
            return None

        lookahead_end = window_end + timedelta(minutes=settings.BOUNDARY_LOOKAHEAD_MINUTES)
        try:
            extra = await self.source.get_all_plays(window_end, lookahead_end)
        except Exception as e:
            logger.debug(f"Boundary lookahead failed for play {event.play_id}: {e}")
            return None

        following = sorted((e.airdate for e in extra if e.airdate > event.airdate))
        if not following:
            return None
        return following[0]

    async def _enrich(self, event: PlayEvent) -> PlayEvent:
        if self.source is None:
            return event
        try:
            return await self.source.enrich_show_info(event)
        except Exception as e:
            logger.debug(f"Show lookup failed for play {event.play_id}: {e}")
            return event
