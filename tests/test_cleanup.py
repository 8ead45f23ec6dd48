import asyncio
import threading
from pathlib import Path

from app.cleanup import CleanupScheduler, remove_path


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestScheduleDelete:
    def test_nothing_happens_before_delay(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = CleanupScheduler(clock=clock)
        target = tmp_path / "split-page-1-1.pdf"
        target.write_bytes(b"x")

        scheduler.schedule_delete([target], 3600)
        clock.advance(3599)

        assert scheduler.run_pending() == []
        assert target.exists()
        assert scheduler.pending() == 1

    def test_deletes_once_due(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = CleanupScheduler(clock=clock)
        target = tmp_path / "split-page-1-1.pdf"
        target.write_bytes(b"x")

        scheduler.schedule_delete([target], 3600)
        clock.advance(3600)
        results = scheduler.run_pending()

        assert [r.removed for r in results] == [True]
        assert not target.exists()
        assert scheduler.pending() == 0

    def test_batch_directory_and_zip_go_together(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = CleanupScheduler(clock=clock)
        batch = tmp_path / "pdf-images-5"
        batch.mkdir()
        (batch / "page-1-5.png").write_bytes(b"img")
        (batch / "page-2-5.png").write_bytes(b"img")
        archive = tmp_path / "pdf-images-5.zip"
        archive.write_bytes(b"zip")

        scheduler.schedule_delete([batch, archive], 86400)
        clock.advance(86400)
        scheduler.run_pending()

        assert not batch.exists()
        assert not archive.exists()

    def test_only_due_groups_run(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = CleanupScheduler(clock=clock)
        early = tmp_path / "early.pdf"
        late = tmp_path / "late.pdf"
        early.write_bytes(b"x")
        late.write_bytes(b"x")

        scheduler.schedule_delete([late], 100)
        scheduler.schedule_delete([early], 10)
        clock.advance(50)
        scheduler.run_pending()

        assert not early.exists()
        assert late.exists()
        assert scheduler.pending() == 1

    def test_missing_file_is_reported_not_raised(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = CleanupScheduler(clock=clock)
        scheduler.schedule_delete([tmp_path / "already-gone.pdf"], 1)
        clock.advance(1)

        results = scheduler.run_pending()

        assert len(results) == 1
        assert results[0].removed is False
        assert results[0].error is None


class TestRemovePath:
    def test_removes_file(self, tmp_path: Path) -> None:
        target = tmp_path / "a.pdf"
        target.write_bytes(b"x")
        assert remove_path(target).removed is True

    def test_removes_directory_recursively(self, tmp_path: Path) -> None:
        batch = tmp_path / "batch"
        (batch / "nested").mkdir(parents=True)
        (batch / "nested" / "f.png").write_bytes(b"x")
        assert remove_path(batch).removed is True
        assert not batch.exists()


class RecordingScheduler(CleanupScheduler):
    def __init__(self, clock):
        super().__init__(clock=clock)
        self.threads = []

    def run_pending(self):
        self.threads.append(threading.get_ident())
        return super().run_pending()


class TestRunForever:
    def test_cleanup_passes_run_off_the_event_loop_thread(self, tmp_path: Path) -> None:
        clock = FakeClock()
        scheduler = RecordingScheduler(clock)
        batch = tmp_path / "pdf-images-9"
        batch.mkdir()
        (batch / "page-1-9.png").write_bytes(b"img")
        scheduler.schedule_delete([batch], 0)

        async def run():
            task = asyncio.create_task(scheduler.run_forever(0.01))
            await asyncio.sleep(0.1)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return threading.get_ident()

        loop_thread = asyncio.run(run())

        assert not batch.exists()
        assert scheduler.threads
        assert loop_thread not in scheduler.threads
