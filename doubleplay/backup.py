import asyncio
import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from .config import settings
from .models import DatasetWindow, utc_now
from .storage import normalize

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "double-plays-backup-"


class BackupManager:
    """
    Local directory backups of the dataset. Every operation absorbs its own
    failures; a broken backup never fails a scan.
    """

    def __init__(self, path: Optional[str] = None):
        path = path if path is not None else settings.LOCAL_BACKUP_PATH
        self.path: Optional[Path] = Path(path) if path else None
        self.enabled = self.path is not None
        self.last_range: Optional[Tuple[datetime, datetime]] = None
        self.last_backup_at: Optional[float] = None

        if not self.enabled:
            logger.warning("No backup path configured - data will not be backed up")

    def initialize(self):
        if not self.enabled:
            return
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Local backup initialized at {self.path}")
        except OSError as e:
            logger.error(f"Failed to create backup directory {self.path}: {e}")
            self.enabled = False

    def should_backup(self, start: datetime, end: datetime) -> bool:
        if self.last_range is None:
            # First sighting only records the range
            self.last_range = (start, end)
            self.last_backup_at = time.monotonic()
            return False

        interval_s = settings.BACKUP_INTERVAL_HOURS * 3600
        if self.last_backup_at is not None and time.monotonic() - self.last_backup_at >= interval_s:
            return True

        last_start, last_end = self.last_range
        # Expanded by at least one calendar day in either direction
        return start.date() < last_start.date() or end.date() > last_end.date()

    async def check_and_backup(self, payload: Dict[str, Any]) -> Optional[Path]:
        """Back up a dumped dataset if it is due. Never raises."""
        if not self.enabled:
            return None
        try:
            window = DatasetWindow.model_validate(payload)
            if not self.should_backup(window.start_time, window.end_time):
                logger.debug("Backup not needed - date range unchanged")
                return None
            return await asyncio.to_thread(self._write, payload, window)
        except Exception as e:
            logger.error(f"Backup check failed: {e}", exc_info=True)
            return None

    async def shutdown_backup(self, payload: Dict[str, Any]) -> Optional[Path]:
        if not self.enabled:
            logger.debug("No backup path configured - skipping shutdown backup")
            return None
        try:
            window = DatasetWindow.model_validate(payload)
            path = await asyncio.to_thread(self._write, payload, window)
            logger.info("Shutdown backup completed")
            return path
        except Exception as e:
            logger.error(f"Shutdown backup failed: {e}", exc_info=True)
            return None

    def _write(self, payload: Dict[str, Any], window: DatasetWindow) -> Path:
        stamp = utc_now().strftime("%Y-%m-%d-%H-%M-%S-%f")
        target = self.path / f"{BACKUP_PREFIX}{stamp}.json"
        tmp_path = target.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(payload, f, indent=2)
        os.rename(tmp_path, target)

        self.last_range = (window.start_time, window.end_time)
        self.last_backup_at = time.monotonic()
        logger.info(f"Backed up {len(window.double_plays)} double plays to {target}")
        self._prune()
        return target

    def _prune(self):
        backups = sorted(self.path.glob(f"{BACKUP_PREFIX}*.json"))
        for old in backups[:-settings.BACKUP_KEEP] if settings.BACKUP_KEEP > 0 else []:
            try:
                old.unlink()
            except OSError as e:
                logger.warning(f"Could not remove old backup {old}: {e}")

    def load_best_backup(self) -> Optional[DatasetWindow]:
        """The readable backup covering the longest span, if any."""
        if not self.enabled or not self.path.exists():
            return None

        best: Optional[DatasetWindow] = None
        for candidate in sorted(self.path.glob(f"{BACKUP_PREFIX}*.json")):
            try:
                with open(candidate, 'r') as f:
                    window = DatasetWindow.model_validate(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable backup {candidate}: {e}")
                continue
            if best is None or window.span >= best.span:
                best = window

        if best is not None:
            logger.info(f"Best backup covers {best.start_time.isoformat()} -> {best.end_time.isoformat()}")
            return normalize(best)
        return None
