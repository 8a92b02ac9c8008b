import datetime as dt
import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from guideboard.arbiter import ClaimArbiter
from guideboard.auth import get_caller, get_store
from guideboard.changes import ChangeFeed
from guideboard.config import Settings, configure_logging, get_settings
from guideboard.database import (
    InMemoryKeyValueDatabase,
    IntegrityError,
    RowLockTimeout,
)
from guideboard.models import Contact, Job, JobStatus, Profile, Role, job_key
from guideboard.policy import PermissionDenied, ScopedStore, is_admin

logger = logging.getLogger(__name__)

router = APIRouter()


class ContactIn(BaseModel):
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    date: dt.date
    call_time: dt.time
    dock_time: dt.time | None = None
    location: str | None = None
    boat: str | None = None
    requirements: list[str] = Field(default_factory=list)
    pay: Decimal | None = None
    notes: str | None = None
    contact: ContactIn | None = None


class JobUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    date: dt.date | None = None
    call_time: dt.time | None = None
    dock_time: dt.time | None = None
    location: str | None = None
    boat: str | None = None
    requirements: list[str] | None = None
    pay: Decimal | None = None
    notes: str | None = None

    @field_validator("title", "date", "call_time", "requirements", mode="before")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("field cannot be cleared")
        return value


class AssignRequest(BaseModel):
    guide_id: str


class ProfileUpdateRequest(BaseModel):
    full_name: str


class JobView(Job):
    contact: Contact | None = None
    claimer_name: str | None = None


def _errors(exc: ValidationError) -> list:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def _view(store: ScopedStore, job: Job) -> JobView:
    claimer_name = None
    if job.claimed_by is not None:
        claimer = store.get_profile(job.claimed_by)
        if claimer is not None:
            claimer_name = claimer.full_name or "(no name)"
    return JobView(
        **job.model_dump(),
        contact=store.get_contact(job.id),
        claimer_name=claimer_name,
    )


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/me")
async def read_me(caller: Profile = Depends(get_caller)) -> Profile:
    return caller


@router.patch("/me")
async def update_me(
    body: ProfileUpdateRequest, store: ScopedStore = Depends(get_store)
) -> Profile:
    return store.update_profile(store.caller.id, full_name=body.full_name)


@router.get("/profiles")
async def list_profiles(
    role: Role | None = None, store: ScopedStore = Depends(get_store)
) -> list[Profile]:
    return store.list_profiles(role)


@router.get("/jobs")
async def list_jobs(
    view: str = "open",
    include_canceled: bool = False,
    store: ScopedStore = Depends(get_store),
) -> list[JobView]:
    caller = store.caller

    if view == "open":
        jobs = [j for j in store.list_jobs(JobStatus.OPEN) if j.claimed_by is None]
    elif view == "mine":
        jobs = [j for j in store.list_jobs() if j.claimed_by == caller.id]
    elif view == "all":
        if not is_admin(caller):
            raise HTTPException(status_code=403, detail="Admin access required")
        statuses = [JobStatus.OPEN, JobStatus.ASSIGNED, JobStatus.COMPLETE]
        if include_canceled:
            statuses.append(JobStatus.CANCELED)
        jobs = store.list_jobs(*statuses)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown view: {view}")

    return [_view(store, j) for j in jobs]


@router.post("/jobs", status_code=201)
def create_job(
    body: JobCreateRequest, store: ScopedStore = Depends(get_store)
) -> JobView:
    fields = body.model_dump(exclude={"contact"})
    try:
        job = Job(**fields, created_by=store.caller.id)
        contact = (
            Contact(job_id=job.id, **body.contact.model_dump())
            if body.contact is not None
            else None
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_errors(exc))

    job = store.insert_job(job)

    if contact is not None:
        # contact is a second write; undo the job if it does not land
        try:
            store.put_contact(contact)
        except IntegrityError as exc:
            logger.warning("contact write failed for job=%s: %s", job.id, exc)
            if not store.delete_job(job.id, only_if_open=True):
                raise HTTPException(
                    status_code=409,
                    detail="Job was claimed before its contact info was saved; "
                    "set it with PUT /jobs/{id}/contact.",
                )
            raise HTTPException(
                status_code=422,
                detail="Failed to save contact info. Please try again.",
            )

    return _view(store, job)


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, store: ScopedStore = Depends(get_store)) -> JobView:
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _view(store, job)


@router.patch("/jobs/{job_id}")
def update_job(
    job_id: str,
    body: JobUpdateRequest,
    store: ScopedStore = Depends(get_store),
) -> JobView:
    job = store.update_job(job_id, body.model_dump(exclude_unset=True))
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _view(store, job)


@router.get("/jobs/{job_id}/contact")
async def get_contact(
    job_id: str, store: ScopedStore = Depends(get_store)
) -> Contact:
    contact = store.get_contact(job_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


@router.put("/jobs/{job_id}/contact")
async def put_contact(
    job_id: str, body: ContactIn, store: ScopedStore = Depends(get_store)
) -> Contact:
    if not is_admin(store.caller):
        raise PermissionDenied("only admins can write contact info")
    if store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    try:
        contact = Contact(job_id=job_id, **body.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_errors(exc))
    return store.put_contact(contact)


# transitions are plain def: they run in the threadpool and contend on the
# job row lock


def _failure_reason(action: str, job: Job | None, caller: Profile) -> str:
    """Why a transition returned False, judged from the job as it is now."""
    if job is None:
        return "not_found"
    admin = is_admin(caller)
    if action in ("assign", "cancel") and not admin:
        return "forbidden"
    if action in ("unclaim", "complete") and not (
        admin or job.claimed_by == caller.id
    ):
        return "forbidden"
    if action == "claim":
        return "already_claimed" if job.claimed_by is not None else "not_open"
    if action == "assign":
        return "unknown_guide"
    return "invalid_status"


SUCCESS_STATUS = {
    "claim": "claimed",
    "unclaim": "unclaimed",
    "assign": "assigned",
    "complete": "completed",
    "cancel": "canceled",
}


def _transition(
    request: Request,
    action: str,
    job_id: str,
    caller: Profile,
    *,
    guide_id: str | None = None,
) -> dict:
    arbiter: ClaimArbiter = request.app.state.arbiter
    written = arbiter.apply(action, job_id, caller.id, guide_id=guide_id)

    if written is not None:
        return {
            "ok": True,
            "status": SUCCESS_STATUS[action],
            "job_id": job_id,
            "job_status": written.status,
            "claimed_by": written.claimed_by,
        }

    job = request.app.state.database.get(job_key(job_id))
    return {
        "ok": False,
        "status": _failure_reason(
            action, job if isinstance(job, Job) else None, caller
        ),
        "job_id": job_id,
    }


@router.post("/jobs/{job_id}/claim")
def claim_job(
    job_id: str, request: Request, caller: Profile = Depends(get_caller)
) -> dict:
    return _transition(request, "claim", job_id, caller)


@router.post("/jobs/{job_id}/unclaim")
def unclaim_job(
    job_id: str, request: Request, caller: Profile = Depends(get_caller)
) -> dict:
    return _transition(request, "unclaim", job_id, caller)


@router.post("/jobs/{job_id}/assign")
def assign_job(
    job_id: str,
    body: AssignRequest,
    request: Request,
    caller: Profile = Depends(get_caller),
) -> dict:
    return _transition(request, "assign", job_id, caller, guide_id=body.guide_id)


@router.post("/jobs/{job_id}/complete")
def complete_job(
    job_id: str, request: Request, caller: Profile = Depends(get_caller)
) -> dict:
    return _transition(request, "complete", job_id, caller)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(
    job_id: str, request: Request, caller: Profile = Depends(get_caller)
) -> dict:
    return _transition(request, "cancel", job_id, caller)


@router.get("/changes")
async def poll_changes(
    request: Request, after: int = 0, caller: Profile = Depends(get_caller)
) -> dict:
    feed: ChangeFeed = request.app.state.change_feed
    return {
        "last_seq": feed.last_seq,
        "events": [e.model_dump(mode="json") for e in feed.since(after)],
    }


async def _lock_timeout_handler(request: Request, exc: RowLockTimeout) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "Job is busy, please retry", "retryable": True},
    )


async def _permission_denied_handler(
    request: Request, exc: PermissionDenied
) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


async def _integrity_error_handler(
    request: Request, exc: IntegrityError
) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI()
    db: InMemoryKeyValueDatabase[str, Job | Contact | Profile] = (
        InMemoryKeyValueDatabase()
    )
    app.state.settings = settings
    app.state.database = db
    app.state.now_fn = lambda: dt.datetime.now(dt.UTC)

    app.state.change_feed = ChangeFeed(
        capacity=settings.change_feed_capacity,
        now_fn=lambda: app.state.now_fn(),
    )
    app.state.arbiter = ClaimArbiter(
        db,
        feed=app.state.change_feed,
        now_fn=lambda: app.state.now_fn(),
        lock_timeout=settings.lock_timeout_seconds,
    )

    app.add_exception_handler(RowLockTimeout, _lock_timeout_handler)
    app.add_exception_handler(PermissionDenied, _permission_denied_handler)
    app.add_exception_handler(IntegrityError, _integrity_error_handler)

    app.include_router(router)
    return app
