from datetime import date

import pytest

from conftest import make_job
from guideboard.database import IntegrityError
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
from guideboard.policy import (
    PermissionDenied,
    ScopedStore,
    can_read_contact,
    can_read_job,
    is_admin,
)


def _profile(db, user_id: str) -> Profile:
    profile = db.get(profile_key(user_id))
    assert isinstance(profile, Profile)
    return profile


@pytest.fixture
def as_admin(db, feed) -> ScopedStore:
    return ScopedStore(db, _profile(db, "admin-id"), feed=feed)


@pytest.fixture
def as_alice(db, feed) -> ScopedStore:
    return ScopedStore(db, _profile(db, "alice-id"), feed=feed)


@pytest.fixture
def as_barry(db, feed) -> ScopedStore:
    return ScopedStore(db, _profile(db, "barry-id"), feed=feed)


def test_is_admin_requires_active_admin_role() -> None:
    assert is_admin(Profile(id="a", role=Role.ADMIN))
    assert not is_admin(Profile(id="a", role=Role.ADMIN, is_active=False))
    assert not is_admin(Profile(id="g"))
    assert not is_admin(None)


def test_job_visibility_predicate() -> None:
    guide = Profile(id="barry-id")
    assert can_read_job(guide, make_job("j"))
    assert can_read_job(
        guide, make_job("j", status="assigned", claimed_by="barry-id")
    )
    assert not can_read_job(
        guide, make_job("j", status="assigned", claimed_by="alice-id")
    )
    assert not can_read_job(guide, make_job("j", status="canceled"))


def test_contact_visibility_predicate() -> None:
    guide = Profile(id="barry-id")
    assert not can_read_contact(guide, make_job("j"))
    assert not can_read_contact(guide, None)
    assert can_read_contact(
        guide, make_job("j", status="assigned", claimed_by="barry-id")
    )


def test_guides_see_open_and_own_jobs_only(as_alice, as_barry, as_admin) -> None:
    assert {j.id for j in as_alice.list_jobs()} == {"open-job", "alice-job"}
    assert {j.id for j in as_barry.list_jobs()} == {"open-job"}
    assert as_barry.get_job("alice-job") is None
    assert {j.id for j in as_admin.list_jobs()} == {"open-job", "alice-job"}


def test_list_jobs_filters_by_status_and_sorts_by_date(as_admin, db) -> None:
    db.put(job_key("early"), make_job("early", date=date(2025, 7, 1)))
    db.put(job_key("gone"), make_job("gone", status="canceled"))

    assert [j.id for j in as_admin.list_jobs(JobStatus.OPEN)] == ["early", "open-job"]
    assert [j.id for j in as_admin.list_jobs(JobStatus.CANCELED)] == ["gone"]


def test_open_job_contact_hidden_from_guides(as_barry, as_alice, as_admin) -> None:
    assert as_barry.get_contact("open-job") is None
    assert as_barry.get_contact("alice-job") is None
    assert as_alice.get_contact("alice-job").customer_name == "Carl Customer"
    assert as_admin.get_contact("open-job").customer_name == "Olive Open"


def test_guides_cannot_write_jobs_or_contacts(as_alice) -> None:
    with pytest.raises(PermissionDenied):
        as_alice.insert_job(make_job("new", created_by="alice-id"))
    with pytest.raises(PermissionDenied):
        as_alice.update_job("alice-job", {"title": "mine now"})
    with pytest.raises(PermissionDenied):
        as_alice.delete_job("alice-job")
    with pytest.raises(PermissionDenied):
        as_alice.put_contact(Contact(job_id="alice-job", customer_name="x"))


def test_insert_job_forces_open_state_and_creator(as_admin, db, feed) -> None:
    job = as_admin.insert_job(make_job("new", created_by="someone-else"))

    assert job.status == JobStatus.OPEN
    assert job.claimed_by is None
    assert job.created_by == "admin-id"
    assert db.get(job_key("new")) == job
    assert [(e.table, e.op) for e in feed.since(0)] == [("jobs", "insert")]


def test_insert_duplicate_job_id_rejected(as_admin) -> None:
    with pytest.raises(IntegrityError):
        as_admin.insert_job(make_job("open-job"))


def test_update_job_edits_fields_but_not_state(as_admin) -> None:
    job = as_admin.update_job("alice-job", {"title": "Night dive", "pay": "300"})
    assert job.title == "Night dive"
    assert str(job.pay) == "300"
    assert job.claimed_by == "alice-id"

    with pytest.raises(PermissionDenied):
        as_admin.update_job("alice-job", {"status": "open"})
    with pytest.raises(PermissionDenied):
        as_admin.update_job("alice-job", {"claimed_by": None})

    assert as_admin.update_job("nope", {"title": "x"}) is None


def test_update_job_rejects_invalid_values(as_admin) -> None:
    with pytest.raises(IntegrityError):
        as_admin.update_job("open-job", {"pay": "-5"})


def test_delete_job_cascades_to_contact(as_admin, db) -> None:
    assert as_admin.delete_job("open-job") is True

    assert db.get(job_key("open-job")) is None
    assert db.get(contact_key("open-job")) is None
    assert as_admin.delete_job("open-job") is False


def test_put_contact_requires_parent_job(as_admin) -> None:
    with pytest.raises(IntegrityError):
        as_admin.put_contact(Contact(job_id="nope", customer_name="Nobody"))


def test_put_contact_upserts_and_keeps_created_at(as_admin, db, feed) -> None:
    db.put(job_key("fresh"), make_job("fresh"))
    first = as_admin.put_contact(Contact(job_id="fresh", customer_name="New"))
    second = as_admin.put_contact(
        Contact(job_id="fresh", customer_name="Newer", customer_phone="+1")
    )

    assert second.customer_name == "Newer"
    assert first.created_at is not None
    assert second.created_at == first.created_at
    assert [e.op for e in feed.since(0)] == ["insert", "update"]


def test_profiles_visible_to_self_or_admin(as_alice, as_admin) -> None:
    assert [p.id for p in as_alice.list_profiles()] == ["alice-id"]
    assert as_alice.get_profile("barry-id") is None

    guides = as_admin.list_profiles(Role.GUIDE)
    assert "barry-id" in {p.id for p in guides}
    assert "admin-id" not in {p.id for p in guides}


def test_profile_updates_only_by_owner(as_alice, as_admin, db) -> None:
    updated = as_alice.update_profile("alice-id", full_name="  Alice O.  ")
    assert updated.full_name == "Alice O."
    assert as_alice.caller.full_name == "Alice O."

    with pytest.raises(PermissionDenied):
        as_admin.update_profile("alice-id", full_name="renamed")
    with pytest.raises(PermissionDenied):
        as_alice.update_profile("barry-id", full_name="renamed")


def test_job_model_rejects_inconsistent_claimant() -> None:
    with pytest.raises(ValueError):
        make_job("j", status="canceled", claimed_by="alice-id")
    with pytest.raises(ValueError):
        make_job("j", status="assigned")
    with pytest.raises(ValueError):
        make_job("j", claimed_by="alice-id")


def test_job_model_cleans_requirements() -> None:
    job = make_job("j", requirements=["DM", " DM ", "", "Nitrox"])
    assert job.requirements == ["DM", "Nitrox"]
    assert isinstance(job, Job)


def test_contact_requires_customer_name() -> None:
    with pytest.raises(ValueError):
        Contact(job_id="j", customer_name="   ")


def test_guarded_delete_keeps_claimed_job(as_admin, db) -> None:
    assert as_admin.delete_job("alice-job", only_if_open=True) is False
    assert isinstance(db.get(job_key("alice-job")), Job)
    assert isinstance(db.get(contact_key("alice-job")), Contact)

    assert as_admin.delete_job("open-job", only_if_open=True) is True
    assert db.get(job_key("open-job")) is None
