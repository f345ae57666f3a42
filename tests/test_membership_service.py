import threading
from datetime import datetime, timedelta, timezone

import pytest

import membership_service
from exceptions import (
    ConflictError,
    ForbiddenError,
    GenerationFailedError,
    NotFoundError,
    ValidationError,
)
from membership import MembershipStatus


def test_default_types_are_seeded(memberships):
    limits = {t.name: t.max_books for t in memberships.list_membership_types()}
    assert limits == {"student": 2, "standard": 3, "premium": 5}


def test_seeding_runs_once(lib, memberships):
    membership_service.MembershipService(lib)
    assert len(memberships.list_membership_types()) == 3


def test_apply_creates_pending_membership(lib, memberships, reader):
    membership = memberships.apply_for_membership(reader, "Standard", 12, notes="<b>hi</b>")
    assert membership.status is MembershipStatus.PENDING
    assert membership.type == "standard"
    assert membership.membership_number.startswith("MEM24")
    assert len(membership.membership_number) == len("MEM24") + 4
    assert membership.valid_until == datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert membership.notes == "bhi/b"
    assert lib.get_user(reader.id).membership_id == membership.id
    assert reader.membership_id == membership.id


def test_duration_uses_calendar_months(memberships, reader, clock):
    clock.set(datetime(2024, 1, 31, tzinfo=timezone.utc))
    membership = memberships.apply_for_membership(reader, "student", 1)
    assert membership.valid_until == datetime(2024, 2, 29, tzinfo=timezone.utc)


def test_admin_cannot_apply(memberships, admin):
    with pytest.raises(ForbiddenError):
        memberships.apply_for_membership(admin, "standard", 12)


@pytest.mark.parametrize("months", [0, -3, "12", 1.5])
def test_apply_rejects_bad_duration(memberships, reader, months):
    with pytest.raises(ValidationError):
        memberships.apply_for_membership(reader, "standard", months)


def test_apply_requires_type(memberships, reader):
    with pytest.raises(ValidationError):
        memberships.apply_for_membership(reader, "  ", 12)


def test_second_open_application_conflicts(memberships, admin, reader):
    first = memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ConflictError):
        memberships.apply_for_membership(reader, "premium", 12)
    memberships.process_membership_application(admin, first.id, "active")
    with pytest.raises(ConflictError):
        memberships.apply_for_membership(reader, "premium", 12)


def test_reapply_after_rejection(memberships, admin, reader):
    first = memberships.apply_for_membership(reader, "standard", 12)
    memberships.process_membership_application(admin, first.id, "rejected", notes="Missing documents")
    second = memberships.apply_for_membership(reader, "premium", 12)
    assert second.membership_number != first.membership_number
    assert memberships.get_user_membership(reader).id == second.id


def test_reapply_after_expiry(memberships, admin, reader, clock):
    first = memberships.apply_for_membership(reader, "standard", 1)
    memberships.process_membership_application(admin, first.id, "active")
    clock.advance(days=45)
    second = memberships.apply_for_membership(reader, "standard", 12)
    assert memberships.get_membership(first.id).status is MembershipStatus.EXPIRED
    assert second.status is MembershipStatus.PENDING


def test_unknown_type_falls_back_to_raw_name(memberships, reader, caplog):
    with caplog.at_level("WARNING"):
        membership = memberships.apply_for_membership(reader, "gold", 12)
    assert membership.type == "gold"
    assert "gold" in caplog.text


def test_process_application(memberships, admin, reader):
    membership = memberships.apply_for_membership(reader, "standard", 12, notes="Please")
    processed = memberships.process_membership_application(admin, membership.id, "ACTIVE")
    assert processed.status is MembershipStatus.ACTIVE
    assert processed.notes == "Please\nMembership approved"
    assert processed.processed_by == admin.id


def test_process_uses_supplied_notes(memberships, admin, reader):
    membership = memberships.apply_for_membership(reader, "standard", 12)
    processed = memberships.process_membership_application(admin, membership.id, "rejected", "Incomplete form")
    assert processed.status is MembershipStatus.REJECTED
    assert processed.notes == "Incomplete form"


def test_process_checks(memberships, admin, reader):
    membership = memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ForbiddenError):
        memberships.process_membership_application(reader, membership.id, "active")
    with pytest.raises(NotFoundError):
        memberships.process_membership_application(admin, 999, "active")
    with pytest.raises(ValidationError):
        memberships.process_membership_application(admin, membership.id, "expired")

    memberships.process_membership_application(admin, membership.id, "active")
    with pytest.raises(ConflictError):
        memberships.process_membership_application(admin, membership.id, "rejected")


def test_eligibility(memberships, admin, reader, clock):
    assert memberships.is_eligible_to_borrow(reader) is False
    membership = memberships.apply_for_membership(reader, "standard", 1)
    assert memberships.is_eligible_to_borrow(reader) is False
    memberships.process_membership_application(admin, membership.id, "active")
    assert memberships.is_eligible_to_borrow(reader) is True

    clock.set(membership.valid_until)
    assert memberships.is_eligible_to_borrow(reader) is True
    clock.advance(seconds=1)
    assert memberships.is_eligible_to_borrow(reader) is False


def test_cancel_membership(memberships, admin, reader, make_member):
    membership = memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ConflictError):
        memberships.cancel_membership(reader, membership.id)
    memberships.process_membership_application(admin, membership.id, "active")

    stranger = make_member()
    with pytest.raises(ForbiddenError):
        memberships.cancel_membership(stranger, membership.id)

    cancelled = memberships.cancel_membership(reader, membership.id)
    assert cancelled.status is MembershipStatus.CANCELLED
    assert memberships.is_eligible_to_borrow(reader) is False


def test_update_renews_expired_membership(memberships, admin, reader, clock):
    membership = memberships.apply_for_membership(reader, "standard", 1)
    memberships.process_membership_application(admin, membership.id, "active")
    clock.advance(days=45)
    assert memberships.is_eligible_to_borrow(reader) is False

    renewed = memberships.update_membership(
        admin, membership.id, status="active", valid_until=clock() + timedelta(days=30), notes="Renewed at desk"
    )
    assert renewed.status is MembershipStatus.ACTIVE
    assert renewed.valid_until == clock() + timedelta(days=30)
    assert renewed.notes.endswith("Renewed at desk")
    assert renewed.processed_by == admin.id
    assert memberships.is_eligible_to_borrow(reader) is True


def test_update_changes_type_and_limit(memberships, admin, make_member):
    member = make_member()
    membership = memberships.list_memberships(user_id=member.id)[0]
    updated = memberships.update_membership(admin, membership.id, type="Premium")
    assert updated.type == "premium"
    assert memberships.max_books_for(updated) == 5


def test_update_validation(memberships, admin, reader, clock):
    membership = memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ValidationError):
        memberships.update_membership(admin, membership.id, status="frozen")
    with pytest.raises(ValidationError):
        memberships.update_membership(admin, membership.id, type="gold")
    with pytest.raises(ValidationError):
        memberships.update_membership(admin, membership.id, valid_until="next tuesday")
    with pytest.raises(ValidationError):
        memberships.update_membership(admin, membership.id, valid_until=clock() - timedelta(days=400))
    with pytest.raises(ValidationError):
        memberships.update_membership(admin, membership.id, status="active", valid_until=clock() - timedelta(hours=1),
                                      start_date=clock() - timedelta(days=2))
    with pytest.raises(NotFoundError):
        memberships.update_membership(admin, 999, status="active")
    assert memberships.get_membership(membership.id).status is MembershipStatus.PENDING


def test_update_requires_admin(memberships, reader):
    membership = memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ForbiddenError):
        memberships.update_membership(reader, membership.id, status="active")


def test_update_cannot_reopen_beside_another_open_membership(memberships, admin, reader, clock):
    first = memberships.apply_for_membership(reader, "standard", 12)
    memberships.process_membership_application(admin, first.id, "active")
    memberships.cancel_membership(reader, first.id)
    second = memberships.apply_for_membership(reader, "student", 6)

    with pytest.raises(ConflictError):
        memberships.update_membership(admin, first.id, status="active")
    assert memberships.get_membership(first.id).status is MembershipStatus.CANCELLED

    memberships.update_membership(admin, second.id, status="cancelled")
    reinstated = memberships.update_membership(admin, first.id, status="active")
    assert reinstated.status is MembershipStatus.ACTIVE
    assert memberships.get_user_membership(reader).id == first.id


def test_list_pending_applications(memberships, admin, reader, make_member):
    make_member()
    pending = memberships.apply_for_membership(reader, "student", 6)
    assert [m.id for m in memberships.list_pending_applications()] == [pending.id]
    with pytest.raises(ValidationError):
        memberships.list_memberships(status="frozen")


def test_create_membership_type(memberships, admin, reader):
    created = memberships.create_membership_type(admin, "Family", 8, fee=80, benefits=["Shared card"])
    assert created.name == "family"
    assert memberships.find_membership_type("FAMILY").max_books == 8
    with pytest.raises(ConflictError):
        memberships.create_membership_type(admin, "family", 4)
    with pytest.raises(ForbiddenError):
        memberships.create_membership_type(reader, "vip", 10)
    with pytest.raises(ValidationError):
        memberships.create_membership_type(admin, "broken", -1)


# --- Membership numbers ---
def test_number_collision_is_retried(lib, memberships, monkeypatch):
    first_user = lib.register_user("First", "first@example.com", "Reader#2024")
    second_user = lib.register_user("Second", "second@example.com", "Reader#2024")
    draws = iter([1234, 1234, 1234, 5678])
    monkeypatch.setattr(membership_service.random, "randint", lambda a, b: next(draws))

    first = memberships.apply_for_membership(first_user, "standard", 12)
    second = memberships.apply_for_membership(second_user, "standard", 12)
    assert first.membership_number == "MEM241234"
    assert second.membership_number == "MEM245678"


def test_number_generation_gives_up(lib, memberships, monkeypatch):
    first_user = lib.register_user("First", "first@example.com", "Reader#2024")
    second_user = lib.register_user("Second", "second@example.com", "Reader#2024")
    monkeypatch.setattr(membership_service.random, "randint", lambda a, b: 42)

    memberships.apply_for_membership(first_user, "standard", 12)
    with pytest.raises(GenerationFailedError):
        memberships.apply_for_membership(second_user, "standard", 12)
    assert lib.get_user(second_user.id).membership_id is None
    assert memberships.list_memberships(user_id=second_user.id) == []


def test_concurrent_applications_get_distinct_numbers(lib, memberships):
    users = [lib.register_user(f"User {i}", f"user{i}@example.com", "Reader#2024") for i in range(12)]
    numbers = []
    errors = []

    def apply(user):
        try:
            numbers.append(memberships.apply_for_membership(user, "standard", 12).membership_number)
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [threading.Thread(target=apply, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(numbers) == len(set(numbers)) == len(users)
