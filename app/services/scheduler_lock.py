from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.models import SchedulerLock

logger = logging.getLogger("app.scheduler_lock")


def default_lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True, slots=True)
class LockHandle:
    name: str
    owner: str
    locked_at: datetime
    min_hold: timedelta


class SchedulerLockManager:
    """Cluster-wide named locks kept in the ``scheduler_locks`` table.

    A lock is held until ``lock_until``; a holder that dies simply lets the max hold run out.
    """

    def __init__(self, session_factory: Callable[[], Session], *, owner: str | None = None):
        self.session_factory = session_factory
        self.owner = owner or default_lock_owner()

    def try_acquire(self, name: str, *, min_hold: timedelta, max_hold: timedelta) -> LockHandle | None:
        now_utc = datetime.now(timezone.utc)
        with self.session_factory() as session, session.begin():
            session.execute(
                insert(SchedulerLock)
                .values(name=name, lock_until=now_utc, locked_at=now_utc, locked_by=self.owner)
                .on_conflict_do_nothing(index_elements=[SchedulerLock.name])
            )
            result = session.execute(
                update(SchedulerLock)
                .where(SchedulerLock.name == name, SchedulerLock.lock_until <= now_utc)
                .values(lock_until=now_utc + max_hold, locked_at=now_utc, locked_by=self.owner)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            logger.info("scheduler_lock_busy", extra={"lock_name": name, "owner": self.owner})
            return None
        logger.info("scheduler_lock_acquired", extra={"lock_name": name, "owner": self.owner})
        return LockHandle(name=name, owner=self.owner, locked_at=now_utc, min_hold=min_hold)

    def release(self, handle: LockHandle) -> None:
        now_utc = datetime.now(timezone.utc)
        lock_until = max(now_utc, handle.locked_at + handle.min_hold)
        with self.session_factory() as session, session.begin():
            session.execute(
                update(SchedulerLock)
                .where(
                    SchedulerLock.name == handle.name,
                    SchedulerLock.locked_by == handle.owner,
                    SchedulerLock.locked_at == handle.locked_at,
                )
                .values(lock_until=lock_until)
                .execution_options(synchronize_session=False)
            )
        logger.info("scheduler_lock_released", extra={"lock_name": handle.name, "owner": handle.owner})
