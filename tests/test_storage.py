import json
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from doubleplay.engine import classify
from doubleplay.models import ClassificationCounts, DatasetWindow, DoublePlayGroup, DoublePlayOccurrence, PlayEvent
from doubleplay.storage import DatasetStore, DatasetValidationError, normalize, validate_dataset

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_group(minute, first_id, artist="Artist X", title="Song Y", classification="set"):
    occurrences = []
    for n in range(2):
        event = PlayEvent(airdate=T0 + timedelta(minutes=minute + 4 * n), artist=artist, title=title, play_id=first_id + n)
        occurrences.append(DoublePlayOccurrence(timestamp=event.airdate, play_id=event.play_id, duration=240, event=event))
    group = DoublePlayGroup(artist=artist, title=title, occurrences=occurrences)
    if classification == "set":
        group.classification = classify(occurrences)
    return group


def make_window(*groups):
    window = DatasetWindow(start_time=T0, end_time=T0 + timedelta(hours=6), double_plays=list(groups))
    window.recount()
    return window


class TestDatasetStore(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.test_dir, "data", "double-plays.json")
        self.store = DatasetStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_save_and_load(self):
        window = make_window(make_group(0, 1), make_group(60, 10, artist="B", title="T"))
        self.store.save(window)

        loaded = self.store.load()

        self.assertEqual(loaded.start_time, window.start_time)
        self.assertEqual(loaded.end_time, window.end_time)
        self.assertEqual([g.artist for g in loaded.double_plays], ["Artist X", "B"])
        self.assertEqual(loaded.counts, ClassificationCounts(legitimate=2, total=2))
        self.assertFalse(os.path.exists(self.path.replace(".json", ".tmp")))

    def test_groups_written_newest_first(self):
        window = make_window(make_group(0, 1), make_group(120, 20, artist="C", title="U"), make_group(60, 10, artist="B", title="T"))
        self.store.save(window)

        with open(self.path) as f:
            raw = json.load(f)

        self.assertEqual([g["artist"] for g in raw["double_plays"]], ["C", "B", "Artist X"])
        self.assertEqual(raw["counts"]["total"], 3)
        # The in-memory dataset keeps its order
        self.assertEqual([g.artist for g in window.double_plays], ["Artist X", "C", "B"])

    def test_missing_file_gives_default_window(self):
        self.assertFalse(self.store.exists())
        window = self.store.load()
        self.assertEqual(window.double_plays, [])
        self.assertEqual(window.span, timedelta(days=1))

    def test_corrupt_file_gives_default_window(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w") as f:
            f.write("{not json")

        with self.assertLogs("doubleplay.storage", level="ERROR"):
            window = self.store.load()
        self.assertEqual(window.double_plays, [])

    def test_invalid_dataset_is_never_written(self):
        inverted = make_window()
        inverted.start_time = inverted.end_time + timedelta(hours=1)

        single = make_window(make_group(0, 1))
        single.double_plays[0].occurrences.pop()

        unclassified = make_window(make_group(0, 1))
        unclassified.double_plays[0].classification = None

        mismatched = make_window(make_group(0, 1))
        occurrence = mismatched.double_plays[0].occurrences[1]
        occurrence.event = occurrence.event.model_copy(update={"title": "Something Else"})

        stale_counts = make_window(make_group(0, 1))
        stale_counts.counts = ClassificationCounts(legitimate=5, total=5)

        for window in (inverted, single, unclassified, mismatched, stale_counts):
            with self.assertRaises(DatasetValidationError) as ctx:
                self.store.save(window)
            self.assertTrue(str(ctx.exception).startswith("Data validation failed"))
        self.assertFalse(self.store.exists())

    def test_failed_save_keeps_previous_file(self):
        self.store.save(make_window(make_group(0, 1)))
        broken = make_window(make_group(0, 1), make_group(60, 10, artist="B", title="T"))
        broken.counts = ClassificationCounts()

        with self.assertRaises(DatasetValidationError):
            self.store.save(broken)

        self.assertEqual(len(self.store.load().double_plays), 1)

    def test_remove(self):
        self.store.save(make_window())
        self.store.remove()
        self.assertFalse(self.store.exists())


class TestNormalize(unittest.TestCase):
    def test_sorts_classifies_and_recounts(self):
        late = make_group(60, 10, artist="B", title="T", classification=None)
        early = make_group(0, 1)
        early.occurrences.reverse()
        window = DatasetWindow(start_time=T0, end_time=T0 + timedelta(hours=2), double_plays=[late, early])

        normalize(window)

        self.assertEqual([g.artist for g in window.double_plays], ["Artist X", "B"])
        self.assertEqual([o.play_id for o in window.double_plays[0].occurrences], [1, 2])
        self.assertEqual(window.double_plays[1].classification, "legitimate")
        self.assertEqual(window.counts.total, 2)
        validate_dataset(window)


if __name__ == '__main__':
    unittest.main()
