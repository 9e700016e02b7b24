import json
import logging
import os
import fcntl
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict
from pydantic import ValidationError
from .engine import classify
from .models import ClassificationCounts, DatasetWindow, utc_now

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    pass


class DatasetValidationError(PersistenceError):
    """Raised instead of writing a dataset that fails shape checks."""


def default_window() -> DatasetWindow:
    now = utc_now()
    return DatasetWindow(start_time=now - timedelta(days=1), end_time=now)


def validate_dataset(window: DatasetWindow) -> Dict[str, Any]:
    """
    Check the dataset invariants and return its JSON-ready form.
    Raises DatasetValidationError on the first problem found.
    """
    try:
        payload = window.model_dump(mode="json")
        DatasetWindow.model_validate(payload)
    except (ValidationError, ValueError, TypeError) as e:
        raise DatasetValidationError(f"Data validation failed: {e}") from e

    if window.start_time > window.end_time:
        raise DatasetValidationError(
            f"Data validation failed: start {window.start_time.isoformat()} is after end {window.end_time.isoformat()}")

    for idx, group in enumerate(window.double_plays):
        if len(group.occurrences) < 2:
            raise DatasetValidationError(f"Data validation failed: group {idx} ({group.artist} - {group.title}) has fewer than 2 plays")
        if group.classification is None:
            raise DatasetValidationError(f"Data validation failed: group {idx} ({group.artist} - {group.title}) is unclassified")
        for occurrence in group.occurrences:
            event = occurrence.event
            if event.artist.lower() != group.artist.lower() or event.title.lower() != group.title.lower():
                raise DatasetValidationError(
                    f"Data validation failed: play {occurrence.play_id} does not match group {group.artist} - {group.title}")

    expected = ClassificationCounts.tally(window.double_plays)
    if window.counts != expected:
        raise DatasetValidationError(f"Data validation failed: counts {window.counts.model_dump()} != {expected.model_dump()}")

    return payload


class DatasetStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DatasetWindow:
        if not self.path.exists():
            logger.info(f"No data file found at {self.path}, starting with default window.")
            return default_window()

        try:
            with open(self.path, 'r') as f:
                window = DatasetWindow.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load data file {self.path}: {e}. Starting fresh.", exc_info=True)
            return default_window()

        return normalize(window)

    def save(self, window: DatasetWindow):
        payload = validate_dataset(window)
        # Newest first on disk
        order = sorted(range(len(window.double_plays)),
                       key=lambda i: window.double_plays[i].first_timestamp, reverse=True)
        payload["double_plays"] = [payload["double_plays"][i] for i in order]

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix('.tmp')
        try:
            # Atomic write pattern with locking
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError as e:
                    raise PersistenceError(f"Data file {self.path} is locked by another writer") from e

                try:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Failed to save data to {self.path}: {e}") from e

        logger.debug(f"Saved {len(window.double_plays)} double plays to {self.path}")

    def remove(self):
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Removed data file {self.path}")


def normalize(window: DatasetWindow) -> DatasetWindow:
    """Sort groups oldest first, fill in missing classifications and recount."""
    for group in window.double_plays:
        group.occurrences.sort(key=lambda o: o.timestamp)
        if group.classification is None:
            group.classification = classify(group.occurrences)
    window.sort_groups()
    window.recount()
    return window
