import argparse
import asyncio
import logging
import signal
import uvicorn
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Set, Tuple

from .config import settings
from .backup import BackupManager
from .clients.kexp_client import KexpClient
from .engine import DetectionEngine
from .models import DatasetWindow, ScanStats, utc_now
from .progress import ProgressMonitor
from .scan_queue import ScanQueue, historical_floor
from .storage import DatasetStore, DatasetValidationError, PersistenceError
from . import server

logger = logging.getLogger("main")


def setup_logging(debug: bool = False):
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class ScannerService:
    def __init__(self,
                 restart: bool = False,
                 force_local: bool = False,
                 force_backup: bool = False,
                 backward_only: bool = False,
                 start_date: Optional[date] = None):
        self.restart = restart
        self.force_local = force_local
        self.force_backup = force_backup
        self.backward_only = backward_only
        self.start_date = start_date

        self.client = KexpClient()
        self.engine = DetectionEngine(self.client)
        self.store = DatasetStore(settings.DATA_FILE_PATH)
        self.backup = BackupManager()
        self.data: Optional[DatasetWindow] = None
        self.queue: Optional[ScanQueue] = None
        self.progress: Optional[ProgressMonitor] = None
        self.http_server: Optional[uvicorn.Server] = None
        self._http_task: Optional[asyncio.Task] = None
        self._backup_tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None

    def historical_stop(self) -> Optional[datetime]:
        if self.start_date is None:
            return None
        return datetime.combine(self.start_date, datetime.min.time(), tzinfo=timezone.utc)

    def load_data(self) -> Tuple[DatasetWindow, str]:
        """Pick the dataset to resume from: local file, best backup or a fresh window."""
        if self.restart:
            logger.info("Restart requested - discarding local data file")
            self.store.remove()

        local = None
        if not self.force_backup and self.store.exists():
            local = self.store.load()

        backup = None
        if not self.restart and not self.force_local:
            backup = self.backup.load_best_backup()

        if self.force_local and local:
            return local, "local file (forced)"
        if self.force_backup and backup:
            return backup, "backup (forced)"
        if local and backup:
            if backup.span > local.span:
                logger.info(f"Backup covers {backup.span} vs local {local.span}, using backup")
                return backup, "backup (longer date range than local)"
            return local, "local file"
        if local:
            return local, "local file"
        if backup:
            return backup, "backup (local file missing)"

        now = utc_now()
        if self.backward_only:
            # Start just above the floor so the backward scan has work to do
            floor = historical_floor(now, self.historical_stop())
            return DatasetWindow(start_time=min(floor + timedelta(days=1), now), end_time=now), "fresh start (backward-only mode)"
        return DatasetWindow(start_time=now, end_time=now), "fresh start"

    def update_scan_stats(self, direction: str, scan_time_ms: int, request_count: int):
        stats = self.data.scan_stats or ScanStats(scan_direction=direction)
        stats.total_scan_time_ms += scan_time_ms
        stats.total_api_requests += request_count
        stats.last_scan_duration_ms = scan_time_ms
        stats.last_scan_requests = request_count
        stats.last_scan_time = utc_now()
        stats.scan_direction = direction
        self.data.scan_stats = stats

    async def save_with_backup(self):
        self.store.save(self.data)
        # Backups run in the background and never hold up the scan
        task = asyncio.create_task(self.backup.check_and_backup(self.data.model_dump(mode="json")))
        self._backup_tasks.add(task)
        task.add_done_callback(self._backup_tasks.discard)

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def start(self):
        self._stop_event = asyncio.Event()
        self.backup.initialize()

        self.data, source = self.load_data()
        logger.info(f"KEXP Double Play Scanner initialized from {source}: "
                    f"{self.data.start_time.isoformat()} -> {self.data.end_time.isoformat()}, "
                    f"{len(self.data.double_plays)} existing double plays")
        if self.data.scan_stats:
            hours = self.data.scan_stats.total_scan_time_ms / 3_600_000
            logger.info(f"Scan statistics: {self.data.scan_stats.total_api_requests} requests, {hours:.1f}h total scan time")

        if source.startswith("backup") and not settings.DRY_RUN:
            try:
                self.store.save(self.data)
                logger.info("Backup data saved to local file")
            except PersistenceError as e:
                logger.warning(f"Failed to save backup data to local file: {e}")

        self.queue = ScanQueue(
            self.client, self.engine, self.store, self.data,
            save_handler=self.save_with_backup,
            historical_stop=self.historical_stop(),
            backward_only=self.backward_only
        )
        self.queue.on_scan_complete = self.update_scan_stats
        self.queue.on_stopped = self.request_stop
        if self.backward_only:
            self.queue.on_backward_complete = self._backward_done
        self.progress = ProgressMonitor(self.queue)

        # Link the scan queue to the server module
        server.scan_queue = self.queue
        server.progress_monitor = self.progress

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            self.http_server = uvicorn.Server(config)
            self._http_task = asyncio.create_task(self.http_server.serve())

        self.queue.start()
        self.progress.start()
        logger.info(f"Queue-based scanning started - forward scans every {settings.SCAN_INTERVAL_MINUTES} minutes")

        await self._stop_event.wait()
        await self.stop()

    def _backward_done(self):
        logger.info("Backward scan complete - exiting as requested")
        self.request_stop()

    async def stop(self):
        logger.info("Scanner stopping...")
        self.progress.stop()
        self.queue.stop()
        try:
            await self.queue.join()
        except DatasetValidationError as e:
            logger.critical(f"Scanner stopped on a data validation failure: {e}")

        if self._backup_tasks:
            await asyncio.gather(*self._backup_tasks)
        if not settings.DRY_RUN:
            await self.backup.shutdown_backup(self.data.model_dump(mode="json"))

        days = self.data.span.days
        logger.info(f"Session summary: {len(self.data.double_plays)} double plays over {days} days "
                    f"({self.data.start_time.date().isoformat()} to {self.data.end_time.date().isoformat()})")
        for group in reversed(self.data.double_plays[-3:]):
            logger.info(f"Recent: {group.artist} - \"{group.title}\" ({group.classification})")

        if self.http_server:
            self.http_server.should_exit = True
            await self._http_task
        await self.client.close()
        logger.info("Scanner stopped cleanly")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="doubleplay-scanner",
        description="Detects and tracks double plays on KEXP radio"
    )
    parser.add_argument("-r", "--restart", action="store_true", help="Start fresh, ignoring existing data and backups")
    parser.add_argument("-s", "--start", type=date.fromisoformat, default=None,
                        help="Historical stop date for backward scanning (YYYY-MM-DD, default: 365 days ago)")
    parser.add_argument("--backward-scan", action="store_true", help="Scan backward to the start date and exit")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--force-local", action="store_true", help="Use only the local data file")
    group.add_argument("--force-backup", action="store_true", help="Use only backup data")
    parser.add_argument("-p", "--progress", action="store_true", help="Log scan progress periodically")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--dry-run", action="store_true", help="Scan without saving results")
    parser.add_argument("--port", type=int, default=None, help="Serve the status API on this port")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.debug)

    if args.dry_run:
        settings.DRY_RUN = True
    if args.progress:
        settings.PROGRESS_ENABLED = True
    if args.port:
        settings.HTTP_SERVER_ENABLED = True
        settings.HTTP_SERVER_PORT = args.port

    service = ScannerService(
        restart=args.restart,
        force_local=args.force_local,
        force_backup=args.force_backup,
        backward_only=args.backward_scan,
        start_date=args.start
    )
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
