"""
Job state transitions.

Each transition is one read-modify-write on a single job row performed while
holding that row's lock, so concurrent callers on the same job are applied
one after another and each one sees the result of the previous. Callers are
identified by id only; their role is looked up from the profile rows here,
never taken from the request.

``claim``, ``unclaim``, ``assign``, ``complete`` and ``cancel`` return True
when the transition took effect and False when a precondition (row exists,
status, caller permission) did not hold. False never leaves a partial write
behind. ``apply`` runs the same transitions and returns the row exactly as
the transition wrote it, or None. ``RowLockTimeout`` propagates.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from guideboard.changes import ChangeFeed
from guideboard.database import IntegrityError
from guideboard.models import Job, JobStatus, Profile, job_key, profile_key
from guideboard.policy import Database, is_admin

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class ClaimArbiter:
    def __init__(
        self,
        db: Database,
        *,
        feed: ChangeFeed | None = None,
        now_fn: NowFn = lambda: datetime.now(UTC),
        lock_timeout: float = 5.0,
    ) -> None:
        self.db = db
        self.feed = feed
        self.now_fn = now_fn
        self.lock_timeout = lock_timeout

    def claim(self, job_id: str, caller_id: str) -> bool:
        """Take an open, unclaimed job. At most one concurrent caller wins."""
        return self._claim(job_id, caller_id) is not None

    def unclaim(self, job_id: str, caller_id: str) -> bool:
        """Return an assigned job to the open pool (admin or its claimant)."""
        return self._unclaim(job_id, caller_id) is not None

    def assign(self, job_id: str, guide_id: str, caller_id: str) -> bool:
        """Admin hands the job to ``guide_id``, replacing any claimant."""
        return self._assign(job_id, guide_id, caller_id) is not None

    def complete(self, job_id: str, caller_id: str) -> bool:
        return self._complete(job_id, caller_id) is not None

    def cancel(self, job_id: str, caller_id: str) -> bool:
        return self._cancel(job_id, caller_id) is not None

    def apply(
        self,
        action: str,
        job_id: str,
        caller_id: str,
        *,
        guide_id: str | None = None,
    ) -> Job | None:
        if action == "claim":
            return self._claim(job_id, caller_id)
        if action == "unclaim":
            return self._unclaim(job_id, caller_id)
        if action == "assign":
            if guide_id is None:
                raise ValueError("assign needs a guide_id")
            return self._assign(job_id, guide_id, caller_id)
        if action == "complete":
            return self._complete(job_id, caller_id)
        if action == "cancel":
            return self._cancel(job_id, caller_id)
        raise ValueError(f"unknown transition: {action}")

    def _profile(self, user_id: str | None) -> Profile | None:
        if user_id is None:
            return None
        profile = self.db.get(profile_key(user_id))
        if not isinstance(profile, Profile) or not profile.is_active:
            return None
        return profile

    def _write(self, job: Job, **changes) -> Job:
        try:
            updated = job.with_changes(**changes)
        except ValueError as exc:
            raise IntegrityError(f"job {job.id}: {exc}") from exc
        self.db.put(job_key(job.id), updated)
        return updated

    def _done(self, action: str, job: Job, caller_id: str) -> Job:
        logger.info("%s ok job=%s caller=%s", action, job.id, caller_id)
        if self.feed is not None:
            self.feed.publish("jobs", "update", job.id)
        return job

    def _refused(self, action: str, job_id: str, caller_id: str, reason: str) -> None:
        logger.info(
            "%s refused job=%s caller=%s reason=%s", action, job_id, caller_id, reason
        )
        return None

    def _claim(self, job_id: str, caller_id: str) -> Job | None:
        if self._profile(caller_id) is None:
            return self._refused("claim", job_id, caller_id, "unknown caller")

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return self._refused("claim", job_id, caller_id, "not found")
            if job.status != JobStatus.OPEN or job.claimed_by is not None:
                return self._refused(
                    "claim", job_id, caller_id, f"status={job.status}"
                )
            written = self._write(
                job,
                status=JobStatus.ASSIGNED,
                claimed_by=caller_id,
                claimed_at=self.now_fn(),
            )

        return self._done("claim", written, caller_id)

    def _unclaim(self, job_id: str, caller_id: str) -> Job | None:
        caller = self._profile(caller_id)

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return self._refused("unclaim", job_id, caller_id, "not found")
            if not (is_admin(caller) or (caller and job.claimed_by == caller.id)):
                return self._refused("unclaim", job_id, caller_id, "forbidden")
            if job.status != JobStatus.ASSIGNED:
                return self._refused(
                    "unclaim", job_id, caller_id, f"status={job.status}"
                )
            written = self._write(
                job, status=JobStatus.OPEN, claimed_by=None, claimed_at=None
            )

        return self._done("unclaim", written, caller_id)

    def _assign(self, job_id: str, guide_id: str, caller_id: str) -> Job | None:
        if not is_admin(self._profile(caller_id)):
            return self._refused("assign", job_id, caller_id, "forbidden")
        if self._profile(guide_id) is None:
            return self._refused(
                "assign", job_id, caller_id, f"unknown guide {guide_id}"
            )

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return self._refused("assign", job_id, caller_id, "not found")
            written = self._write(
                job,
                status=JobStatus.ASSIGNED,
                claimed_by=guide_id,
                claimed_at=self.now_fn(),
            )

        return self._done("assign", written, caller_id)

    def _complete(self, job_id: str, caller_id: str) -> Job | None:
        caller = self._profile(caller_id)

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return self._refused("complete", job_id, caller_id, "not found")
            if not (is_admin(caller) or (caller and job.claimed_by == caller.id)):
                return self._refused("complete", job_id, caller_id, "forbidden")
            if job.status not in (JobStatus.ASSIGNED, JobStatus.COMPLETE):
                return self._refused(
                    "complete", job_id, caller_id, f"status={job.status}"
                )
            written = self._write(job, status=JobStatus.COMPLETE)

        return self._done("complete", written, caller_id)

    def _cancel(self, job_id: str, caller_id: str) -> Job | None:
        if not is_admin(self._profile(caller_id)):
            return self._refused("cancel", job_id, caller_id, "forbidden")

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return self._refused("cancel", job_id, caller_id, "not found")
            if job.status == JobStatus.COMPLETE:
                return self._refused("cancel", job_id, caller_id, "status=complete")
            written = self._write(
                job, status=JobStatus.CANCELED, claimed_by=None, claimed_at=None
            )

        return self._done("cancel", written, caller_id)
