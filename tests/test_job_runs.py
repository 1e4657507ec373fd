from __future__ import annotations

import unittest
from contextlib import nullcontext
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from app.models import JobRunStatus, JobType
from app.services.job_runs import (
    LOCK_NOT_ACQUIRED,
    UPSTREAM_NOT_COMPLETED,
    JobDefinition,
    JobRunner,
)
from app.services.scheduler_lock import LockHandle, SchedulerLockManager
from app.settings import Settings

RUN_DATE = date(2025, 6, 8)


class _FakeSession:
    def __init__(self, *, rowcount: int = 1):
        self.rowcount = rowcount
        self.statements: list[object] = []

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def begin(self):  # type: ignore[no-untyped-def]
        return nullcontext(self)

    def execute(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(statement)
        return SimpleNamespace(rowcount=self.rowcount)


def _definition(depends_on: JobType | None = None) -> JobDefinition:
    return JobDefinition(
        job_type=JobType.CHECKIN_EXPIRY if depends_on else JobType.CHECKIN_CREATION,
        lock_name="test-lock",
        min_hold=timedelta(seconds=5),
        max_hold=timedelta(minutes=30),
        depends_on=depends_on,
    )


class JobRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.lock_manager = MagicMock()
        self.handle = object()
        self.lock_manager.try_acquire.return_value = self.handle
        self.started_logs: list[tuple[JobType, JobRunStatus, dict]] = []
        self.finished: list[tuple[int, JobRunStatus, dict]] = []

        def fake_start(session, job_type, run_date, *, status=JobRunStatus.RUNNING, details=None):  # type: ignore[no-untyped-def]
            self.started_logs.append((job_type, status, details or {}))
            return SimpleNamespace(id=len(self.started_logs))

        def fake_finish(session, job_log_id, status, details):  # type: ignore[no-untyped-def]
            self.finished.append((job_log_id, status, details))

        self.patches = [
            patch("app.services.job_runs.start_job_log", side_effect=fake_start),
            patch("app.services.job_runs.finish_job_log", side_effect=fake_finish),
        ]
        for item in self.patches:
            item.start()

    def tearDown(self) -> None:
        for item in self.patches:
            item.stop()

    def _runner(self, **settings_overrides) -> JobRunner:  # type: ignore[no-untyped-def]
        return JobRunner(
            session_factory=_FakeSession,
            lock_manager=self.lock_manager,
            settings=Settings(**settings_overrides),
        )

    def test_lock_miss_skips_without_job_log(self) -> None:
        self.lock_manager.try_acquire.return_value = None
        body = MagicMock()

        result = self._runner().run(_definition(), body, run_date=RUN_DATE)

        self.assertEqual(result.status, JobRunStatus.SKIPPED)
        self.assertEqual(result.details, {"reason": LOCK_NOT_ACQUIRED})
        self.assertIsNone(result.job_log_id)
        self.assertEqual(self.started_logs, [])
        body.assert_not_called()
        self.lock_manager.release.assert_not_called()

    def test_successful_run_completes_job_log(self) -> None:
        result = self._runner().run(_definition(), lambda context: {"created": 2}, run_date=RUN_DATE)

        self.assertEqual(result.status, JobRunStatus.COMPLETED)
        self.assertEqual(result.job_log_id, 1)
        self.assertEqual(result.details["created"], 2)
        self.assertIn("duration_ms", result.details)
        self.assertEqual(self.started_logs[0][1], JobRunStatus.RUNNING)
        self.assertEqual(self.finished[0][:2], (1, JobRunStatus.COMPLETED))
        self.lock_manager.release.assert_called_once_with(self.handle)

    def test_failing_body_marks_job_failed_and_releases_lock(self) -> None:
        def body(context):  # type: ignore[no-untyped-def]
            raise RuntimeError("boom")

        result = self._runner().run(_definition(), body, run_date=RUN_DATE)

        self.assertEqual(result.status, JobRunStatus.FAILED)
        self.assertEqual(result.details["error"], "boom")
        self.assertEqual(self.finished[0][1], JobRunStatus.FAILED)
        self.lock_manager.release.assert_called_once_with(self.handle)

    def test_dependency_not_completed_records_skipped_run(self) -> None:
        body = MagicMock()
        with patch("app.services.job_runs.upstream_completed", return_value=False):
            result = self._runner().run(_definition(JobType.CHECKIN_CREATION), body, run_date=RUN_DATE)

        self.assertEqual(result.status, JobRunStatus.SKIPPED)
        self.assertEqual(result.details["reason"], UPSTREAM_NOT_COMPLETED)
        self.assertEqual(result.details["upstream"], "CHECKIN_CREATION")
        self.assertEqual(self.started_logs[0][1], JobRunStatus.SKIPPED)
        body.assert_not_called()
        self.lock_manager.release.assert_called_once_with(self.handle)

    def test_dependency_can_be_disabled(self) -> None:
        with patch("app.services.job_runs.upstream_completed", return_value=False) as upstream:
            result = self._runner(job_dependency_enforced=False).run(
                _definition(JobType.CHECKIN_CREATION), lambda context: {}, run_date=RUN_DATE
            )
        self.assertEqual(result.status, JobRunStatus.COMPLETED)
        upstream.assert_not_called()

    def test_body_receives_job_context(self) -> None:
        seen = []
        self._runner().run(_definition(), lambda context: seen.append(context) or {}, run_date=RUN_DATE)
        self.assertEqual(seen[0].job_log_id, 1)
        self.assertEqual(seen[0].run_date, RUN_DATE)


class SchedulerLockManagerTests(unittest.TestCase):
    def test_acquire_returns_handle_when_row_claimed(self) -> None:
        sessions: list[_FakeSession] = []

        def factory() -> _FakeSession:
            sessions.append(_FakeSession(rowcount=1))
            return sessions[-1]

        manager = SchedulerLockManager(factory, owner="host:1")
        handle = manager.try_acquire("checkin-creation", min_hold=timedelta(seconds=5), max_hold=timedelta(minutes=30))

        self.assertIsNotNone(handle)
        assert handle is not None
        self.assertEqual(handle.owner, "host:1")
        self.assertEqual(len(sessions[0].statements), 2)

    def test_acquire_busy_lock_returns_none(self) -> None:
        manager = SchedulerLockManager(lambda: _FakeSession(rowcount=0), owner="host:2")
        self.assertIsNone(
            manager.try_acquire("checkin-creation", min_hold=timedelta(seconds=5), max_hold=timedelta(minutes=30))
        )

    def test_release_keeps_min_hold(self) -> None:
        session = _FakeSession()
        manager = SchedulerLockManager(lambda: session, owner="host:1")
        locked_at = datetime.now(timezone.utc)
        handle = LockHandle(name="checkin-creation", owner="host:1", locked_at=locked_at, min_hold=timedelta(hours=1))

        manager.release(handle)

        params = session.statements[0].compile().params
        self.assertEqual(params["lock_until"], locked_at + timedelta(hours=1))


if __name__ == "__main__":
    unittest.main()
