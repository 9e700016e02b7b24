import json
import os
import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from doubleplay.backup import BACKUP_PREFIX, BackupManager
from doubleplay.config import settings
from doubleplay.models import DatasetWindow

T0 = datetime(2025, 2, 10, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def payload(start, end):
    return DatasetWindow(start_time=start, end_time=end).model_dump(mode="json")


class TestBackupManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.backup_dir = os.path.join(self.test_dir, "backups")
        self._saved = (settings.BACKUP_INTERVAL_HOURS, settings.BACKUP_KEEP)
        settings.BACKUP_INTERVAL_HOURS = 24
        settings.BACKUP_KEEP = 10
        self.manager = BackupManager(self.backup_dir)
        self.manager.initialize()

    def tearDown(self):
        settings.BACKUP_INTERVAL_HOURS, settings.BACKUP_KEEP = self._saved
        shutil.rmtree(self.test_dir)

    def backups(self):
        return sorted(f for f in os.listdir(self.backup_dir) if f.startswith(BACKUP_PREFIX))

    def test_backup_only_when_range_grows_a_day(self):
        self.assertFalse(self.manager.should_backup(T0, T0 + DAY))
        self.assertFalse(self.manager.should_backup(T0, T0 + DAY + timedelta(hours=3)))
        self.assertTrue(self.manager.should_backup(T0, T0 + 2 * DAY))
        self.assertTrue(self.manager.should_backup(T0 - DAY, T0 + DAY))

    def test_backup_when_interval_elapsed(self):
        settings.BACKUP_INTERVAL_HOURS = 0
        self.manager.should_backup(T0, T0 + DAY)
        self.assertTrue(self.manager.should_backup(T0, T0 + DAY))

    async def test_check_and_backup_writes_when_due(self):
        self.assertIsNone(await self.manager.check_and_backup(payload(T0, T0 + DAY)))
        self.assertEqual(self.backups(), [])

        written = await self.manager.check_and_backup(payload(T0 - DAY, T0 + DAY))

        self.assertEqual(self.backups(), [written.name])
        with open(written) as f:
            self.assertEqual(json.load(f)["start_time"], payload(T0 - DAY, T0)["start_time"])
        # The written range becomes the new baseline
        self.assertIsNone(await self.manager.check_and_backup(payload(T0 - DAY, T0 + DAY)))

    async def test_files_are_written_off_the_event_loop_thread(self):
        threads = []
        write = self.manager._write

        def recording_write(*args):
            threads.append(threading.get_ident())
            return write(*args)

        self.manager._write = recording_write
        self.manager.should_backup(T0, T0 + DAY)
        await self.manager.check_and_backup(payload(T0, T0 + 2 * DAY))
        await self.manager.shutdown_backup(payload(T0, T0 + 2 * DAY))

        self.assertEqual(len(threads), 2)
        self.assertNotIn(threading.get_ident(), threads)
        self.assertEqual(len(self.backups()), 2)

    async def test_old_backups_are_pruned(self):
        settings.BACKUP_KEEP = 2
        written = [await self.manager.shutdown_backup(payload(T0, T0 + n * DAY)) for n in range(1, 4)]

        self.assertEqual(self.backups(), [p.name for p in written[1:]])

    async def test_best_backup_has_longest_span(self):
        await self.manager.shutdown_backup(payload(T0, T0 + 5 * DAY))
        await self.manager.shutdown_backup(payload(T0, T0 + DAY))
        with open(os.path.join(self.backup_dir, f"{BACKUP_PREFIX}0000-broken.json"), "w") as f:
            f.write("not json")

        with self.assertLogs("doubleplay.backup", level="WARNING"):
            best = BackupManager(self.backup_dir).load_best_backup()

        self.assertEqual(best.end_time, T0 + 5 * DAY)

    async def test_bad_payload_is_absorbed(self):
        with self.assertLogs("doubleplay.backup", level="ERROR"):
            self.assertIsNone(await self.manager.shutdown_backup({"start_time": "yesterday"}))

    async def test_disabled_without_path(self):
        with self.assertLogs("doubleplay.backup", level="WARNING"):
            manager = BackupManager("")
        self.assertFalse(manager.enabled)
        self.assertIsNone(await manager.check_and_backup(payload(T0, T0 + DAY)))
        self.assertIsNone(await manager.shutdown_backup(payload(T0, T0 + DAY)))
        self.assertIsNone(manager.load_best_backup())


if __name__ == '__main__':
    unittest.main()
