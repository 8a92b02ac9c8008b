"""
Row-level access rules.

The predicates below decide, for one caller and one row, whether the row may
be read or written. ``ScopedStore`` applies them in front of every store
access made on behalf of a request: rows the caller may not read look
missing, and writes the caller may not make raise ``PermissionDenied``.
Nothing is allowed unless a predicate allows it.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from guideboard.changes import ChangeFeed
from guideboard.database import InMemoryKeyValueDatabase, IntegrityError
from guideboard.models import (
    Contact,
    Job,
    JobStatus,
    Profile,
    Role,
    contact_key,
    job_key,
    profile_key,
)

logger = logging.getLogger(__name__)

Database = InMemoryKeyValueDatabase[str, Job | Contact | Profile]

# fields an admin may edit directly; status and claimant only move through
# the arbiter
EDITABLE_JOB_FIELDS = frozenset(
    {
        "title",
        "date",
        "call_time",
        "dock_time",
        "location",
        "boat",
        "requirements",
        "pay",
        "notes",
    }
)


class PermissionDenied(Exception):
    pass


def is_admin(caller: Profile | None) -> bool:
    return caller is not None and caller.is_active and caller.role == Role.ADMIN


def can_read_job(caller: Profile, job: Job) -> bool:
    return (
        job.status == JobStatus.OPEN
        or job.claimed_by == caller.id
        or is_admin(caller)
    )


def can_write_job(caller: Profile) -> bool:
    return is_admin(caller)


def can_read_contact(caller: Profile, job: Job | None) -> bool:
    if is_admin(caller):
        return True
    return job is not None and job.claimed_by == caller.id


def can_write_contact(caller: Profile) -> bool:
    return is_admin(caller)


def can_read_profile(caller: Profile, profile: Profile) -> bool:
    return profile.id == caller.id or is_admin(caller)


def can_update_profile(caller: Profile, profile: Profile) -> bool:
    return profile.id == caller.id


class ScopedStore:
    """The store as seen by one authenticated caller."""

    def __init__(
        self,
        db: Database,
        caller: Profile,
        *,
        feed: ChangeFeed | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
        lock_timeout: float = 5.0,
    ) -> None:
        self.db = db
        self.caller = caller
        self.feed = feed
        self.now_fn = now_fn
        self.lock_timeout = lock_timeout

    def _publish(self, table: str, op: str, row_id: str) -> None:
        if self.feed is not None:
            self.feed.publish(table, op, row_id)

    # jobs

    def get_job(self, job_id: str) -> Job | None:
        job = self.db.get(job_key(job_id))
        if not isinstance(job, Job) or not can_read_job(self.caller, job):
            return None
        return job

    def list_jobs(self, *statuses: JobStatus) -> list[Job]:
        jobs = [
            j
            for j in self.db.all()
            if isinstance(j, Job)
            and can_read_job(self.caller, j)
            and (not statuses or j.status in statuses)
        ]
        return sorted(jobs, key=lambda j: (j.date, j.call_time, j.title))

    def insert_job(self, job: Job) -> Job:
        if not can_write_job(self.caller):
            raise PermissionDenied("only admins can create jobs")
        if self.db.get(job_key(job.id)) is not None:
            raise IntegrityError(f"job {job.id} already exists")

        job = job.with_changes(
            status=JobStatus.OPEN,
            claimed_by=None,
            claimed_at=None,
            created_by=self.caller.id,
            created_at=self.now_fn(),
        )
        self.db.put(job_key(job.id), job)
        self._publish("jobs", "insert", job.id)
        logger.info("job created job=%s by=%s", job.id, self.caller.id)
        return job

    def update_job(self, job_id: str, changes: dict) -> Job | None:
        if not can_write_job(self.caller):
            raise PermissionDenied("only admins can edit jobs")
        illegal = set(changes) - EDITABLE_JOB_FIELDS
        if illegal:
            raise PermissionDenied(f"fields not editable: {sorted(illegal)}")

        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return None
            try:
                updated = job.with_changes(**changes)
            except ValueError as exc:
                raise IntegrityError(str(exc)) from exc
            self.db.put(job_key(job_id), updated)

        self._publish("jobs", "update", job_id)
        return updated

    def delete_job(self, job_id: str, *, only_if_open: bool = False) -> bool:
        """
        Remove a job and its contact row.

        With ``only_if_open`` the delete is refused once the job has left the
        open, unclaimed state, so undoing a fresh insert never discards a claim
        that landed in the meantime.
        """
        if not can_write_job(self.caller):
            raise PermissionDenied("only admins can delete jobs")
        with self.db.row_lock(job_key(job_id), self.lock_timeout) as job:
            if not isinstance(job, Job):
                return False
            if only_if_open and (
                job.status != JobStatus.OPEN or job.claimed_by is not None
            ):
                logger.error(
                    "refusing to delete job=%s: status=%s claimed_by=%s",
                    job_id,
                    job.status,
                    job.claimed_by,
                )
                return False
            self.db.delete(job_key(job_id))
            # contact rows go with their job
            self.db.delete(contact_key(job_id))

        self._publish("jobs", "delete", job_id)
        return True

    # contacts

    def get_contact(self, job_id: str) -> Contact | None:
        job = self.db.get(job_key(job_id))
        contact = self.db.get(contact_key(job_id))
        if not isinstance(contact, Contact):
            return None
        if not can_read_contact(self.caller, job if isinstance(job, Job) else None):
            return None
        return contact

    def put_contact(self, contact: Contact) -> Contact:
        if not can_write_contact(self.caller):
            raise PermissionDenied("only admins can write contact info")
        if not isinstance(self.db.get(job_key(contact.job_id)), Job):
            raise IntegrityError(f"job {contact.job_id} does not exist")

        existing = self.db.get(contact_key(contact.job_id))
        created_at = (
            existing.created_at
            if isinstance(existing, Contact)
            else self.now_fn()
        )
        contact = contact.model_copy(update={"created_at": created_at})
        self.db.put(contact_key(contact.job_id), contact)
        self._publish(
            "job_contacts",
            "update" if existing is not None else "insert",
            contact.job_id,
        )
        return contact

    # profiles

    def get_profile(self, user_id: str) -> Profile | None:
        profile = self.db.get(profile_key(user_id))
        if not isinstance(profile, Profile):
            return None
        if not can_read_profile(self.caller, profile):
            return None
        return profile

    def list_profiles(self, role: Role | None = None) -> list[Profile]:
        profiles = [
            p
            for p in self.db.all()
            if isinstance(p, Profile)
            and can_read_profile(self.caller, p)
            and (role is None or p.role == role)
        ]
        return sorted(profiles, key=lambda p: (p.full_name, p.id))

    def update_profile(self, user_id: str, *, full_name: str) -> Profile:
        profile = self.db.get(profile_key(user_id))
        if not isinstance(profile, Profile) or not can_update_profile(
            self.caller, profile
        ):
            raise PermissionDenied("profiles can only be updated by their owner")

        updated = profile.model_copy(update={"full_name": full_name.strip()})
        self.db.put(profile_key(user_id), updated)
        if user_id == self.caller.id:
            self.caller = updated
        return updated
