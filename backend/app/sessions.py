"""In-process registries for preview sessions and background import jobs.

Both registries keep one lock per entry. The registry-wide lock only guards
dictionary membership and is never held across bundle I/O, so unrelated
sessions and jobs do not contend with each other.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .archive import StagedBundle
from .errors import ExpiredError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class PreviewSession:
    id: str
    owner_id: str
    bundle: StagedBundle
    created_at: float
    expires_at: float
    summary: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def describe(self) -> Dict[str, Any]:
        return {
            "preview_id": self.id,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }


class _SessionSlot:
    __slots__ = ("session", "lock", "state")

    def __init__(self, session: PreviewSession) -> None:
        self.session = session
        self.lock = threading.Lock()
        # open -> claimed | expired | destroyed
        self.state = "open"


class PreviewSessionStore:
    def __init__(self, ttl_seconds: int, clock: Clock = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._registry = threading.Lock()
        self._slots: Dict[str, _SessionSlot] = {}
        # expired session id -> (owner id, forget-after timestamp)
        self._tombstones: Dict[str, Tuple[str, float]] = {}

    def __len__(self) -> int:
        with self._registry:
            return len(self._slots)

    def create(self, owner_id: str, bundle: StagedBundle, summary: Optional[Dict[str, Any]] = None) -> PreviewSession:
        now = self._clock()
        session = PreviewSession(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            bundle=bundle,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            summary=dict(summary or {}),
        )
        with self._registry:
            self._slots[session.id] = _SessionSlot(session)
        return session

    def _lookup(self, session_id: str, owner_id: str) -> _SessionSlot:
        with self._registry:
            slot = self._slots.get(session_id)
            tombstone = self._tombstones.get(session_id)
        if slot is not None:
            return slot
        if tombstone is not None and tombstone[0] == owner_id:
            raise ExpiredError(f"preview '{session_id}' has expired")
        raise NotFoundError(f"preview '{session_id}' not found")

    def _check_open(self, slot: _SessionSlot, owner_id: str) -> bool:
        """Validate a slot under its lock; returns True when it just expired."""

        session = slot.session
        if slot.state == "expired" and session.owner_id == owner_id:
            raise ExpiredError(f"preview '{session.id}' has expired")
        if slot.state != "open":
            raise NotFoundError(f"preview '{session.id}' not found")
        if session.owner_id != owner_id:
            raise ForbiddenError(f"preview '{session.id}' belongs to another owner")
        if session.is_expired(self._clock()):
            slot.state = "expired"
            return True
        return False

    def _retire(self, slot: _SessionSlot, expired: bool) -> None:
        session = slot.session
        with self._registry:
            self._slots.pop(session.id, None)
            if expired:
                self._tombstones[session.id] = (session.owner_id, self._clock() + self.ttl_seconds)
        if expired or slot.state == "destroyed":
            if session.bundle.release():
                logger.info("Released bundle of preview %s (%s)", session.id, slot.state)

    def get(self, session_id: str, owner_id: str) -> PreviewSession:
        slot = self._lookup(session_id, owner_id)
        with slot.lock:
            just_expired = self._check_open(slot, owner_id)
        if just_expired:
            self._retire(slot, expired=True)
            raise ExpiredError(f"preview '{session_id}' has expired")
        return slot.session

    def claim(self, session_id: str, owner_id: str) -> PreviewSession:
        """Take a session out of the store for confirmation.

        Exactly one caller can claim a session; after that neither the sweep
        nor another confirm can see it. The caller owns the bundle from here
        on and must release it.
        """

        slot = self._lookup(session_id, owner_id)
        with slot.lock:
            just_expired = self._check_open(slot, owner_id)
            if not just_expired:
                slot.state = "claimed"
        if just_expired:
            self._retire(slot, expired=True)
            raise ExpiredError(f"preview '{session_id}' has expired")
        self._retire(slot, expired=False)
        return slot.session

    def destroy(self, session_id: str, owner_id: Optional[str] = None) -> bool:
        with self._registry:
            slot = self._slots.get(session_id)
        if slot is None:
            return False
        with slot.lock:
            if slot.state != "open":
                return False
            if owner_id is not None and slot.session.owner_id != owner_id:
                raise ForbiddenError(f"preview '{session_id}' belongs to another owner")
            slot.state = "destroyed"
        self._retire(slot, expired=False)
        return True

    def sweep(self) -> int:
        """Expire every session past its deadline; returns how many were expired."""

        now = self._clock()
        with self._registry:
            slots = list(self._slots.values())
            for session_id, (_, forget_after) in list(self._tombstones.items()):
                if now >= forget_after:
                    del self._tombstones[session_id]

        expired = 0
        for slot in slots:
            with slot.lock:
                if slot.state != "open" or not slot.session.is_expired(now):
                    continue
                slot.state = "expired"
            self._retire(slot, expired=True)
            expired += 1
        if expired:
            logger.info("Preview sweep expired %d session(s)", expired)
        return expired

    def close(self) -> None:
        """Release every open session (used on shutdown)."""

        with self._registry:
            slots = list(self._slots.values())
        for slot in slots:
            with slot.lock:
                if slot.state != "open":
                    continue
                slot.state = "destroyed"
            self._retire(slot, expired=False)


class JobStage(str, Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"


_FINISHED_STAGES = {JobStage.COMPLETED, JobStage.FAILED}


@dataclass
class JobStatus:
    id: str
    owner_id: str
    stage: JobStage = JobStage.QUEUED
    progress_percent: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def finished(self) -> bool:
        return self.stage in _FINISHED_STAGES

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "stage": self.stage.value,
            "progress_percent": self.progress_percent,
            "error": self.error,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobTracker:
    def __init__(self, retention_seconds: int, clock: Clock = time.time) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._registry = threading.Lock()
        self._jobs: Dict[str, JobStatus] = {}

    def __len__(self) -> int:
        with self._registry:
            return len(self._jobs)

    def start(self, owner_id: str) -> JobStatus:
        now = self._clock()
        job = JobStatus(id=uuid.uuid4().hex, owner_id=owner_id, created_at=now, updated_at=now)
        with self._registry:
            self._jobs[job.id] = job
        return job

    def _job(self, job_id: str) -> JobStatus:
        with self._registry:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"job '{job_id}' not found")
        return job

    def update(self, job_id: str, stage: JobStage, progress_percent: Optional[int] = None) -> None:
        job = self._job(job_id)
        with job.lock:
            if job.finished:
                return
            job.stage = stage
            if progress_percent is not None:
                job.progress_percent = max(job.progress_percent, min(100, int(progress_percent)))
            job.updated_at = self._clock()

    def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        job = self._job(job_id)
        with job.lock:
            job.stage = JobStage.COMPLETED
            job.progress_percent = 100
            job.result = result
            job.updated_at = self._clock()

    def fail(self, job_id: str, error: str) -> None:
        job = self._job(job_id)
        with job.lock:
            job.stage = JobStage.FAILED
            job.error = error
            job.updated_at = self._clock()

    def get(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        job = self._job(job_id)
        with job.lock:
            if job.owner_id != owner_id:
                raise ForbiddenError(f"job '{job_id}' belongs to another owner")
            return job.snapshot()

    def purge(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        with self._registry:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished and job.updated_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)


async def run_sweeper(sessions: PreviewSessionStore, jobs: JobTracker, interval_seconds: float) -> None:
    """Expire preview sessions and purge finished jobs on a fixed interval."""

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            sessions.sweep()
            jobs.purge()
        except Exception:
            logger.exception("Background sweep failed")
