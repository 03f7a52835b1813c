"""Slot locking: concurrent creators, lock release and row re-reads"""

import threading

import pytest
from conftest import seed_booking, utc
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from crm_scheduling import database
from crm_scheduling.database import Base, BookingSlotLock
from crm_scheduling.domain.bookings.exceptions import ConflictError, InvalidStateError
from crm_scheduling.domain.bookings.lifecycle import BookingLifecycleManager
from crm_scheduling.domain.bookings.repository import BookingRepository
from crm_scheduling.domain.bookings.schemas import BookingCreate
from crm_scheduling.models import ActivityLog, Booking, BookingStatus, User, UserRole

START = utc(2024, 6, 1, 10, 0)
END = utc(2024, 6, 1, 11, 0)


@pytest.fixture
def file_sessions(tmp_path):
    """Sessions on a file database, one connection each, like separate API requests"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'slots.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def shared_user_id(file_sessions):
    session = file_sessions()
    try:
        user = User(email="bd@example.com", full_name="bd", role=UserRole.BD, is_active=True)
        session.add(user)
        session.commit()
        return user.id
    finally:
        session.close()


class TestConcurrentCreate:
    def test_only_one_overlapping_booking_wins(self, file_sessions, shared_user_id, working_geocoder):
        barrier = threading.Barrier(2)
        outcomes = []

        def create(title):
            session = file_sessions()
            try:
                actor = session.get(User, shared_user_id)
                service = BookingLifecycleManager(session, working_geocoder)
                barrier.wait()
                service.create_booking(
                    actor, BookingCreate(title=title, startTime=START, endTime=END)
                )
                outcomes.append("created")
            except ConflictError:
                outcomes.append("conflict")
            except Exception as e:
                outcomes.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=create, args=(f"Visite {i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(map(str, outcomes)) == ["conflict", "created"]

        session = file_sessions()
        try:
            assert session.query(Booking).filter(Booking.user_id == shared_user_id).count() == 1
        finally:
            session.close()

    def test_lock_released_after_conflict(self, db, bd_user, working_geocoder):
        service = BookingLifecycleManager(db, working_geocoder)
        seed_booking(db, bd_user, START, END)

        with pytest.raises(ConflictError):
            service.create_booking(
                bd_user, BookingCreate(title="Double", startTime=START, endTime=END)
            )
        assert not database._local_slot_locks[bd_user.id].locked()

        booking = service.create_booking(
            bd_user,
            BookingCreate(title="Later", startTime=utc(2024, 6, 1, 11), endTime=utc(2024, 6, 1, 12)),
        )
        assert booking.id is not None


class TestBookingSlotLock:
    def test_exception_rolls_back_and_releases(self, db, bd_user):
        with pytest.raises(RuntimeError):
            with BookingSlotLock(db, bd_user.id):
                db.add(
                    Booking(
                        user_id=bd_user.id,
                        title="Half written",
                        start_time=START,
                        end_time=END,
                        status=BookingStatus.SCHEDULED,
                    )
                )
                db.flush()
                raise RuntimeError("boom")

        assert db.query(Booking).count() == 0
        assert not database._local_slot_locks[bd_user.id].locked()

    def test_commits_on_success(self, session_factory, db, bd_user):
        with BookingSlotLock(db, bd_user.id):
            db.add(
                Booking(
                    user_id=bd_user.id,
                    title="Kept",
                    start_time=START,
                    end_time=END,
                    status=BookingStatus.SCHEDULED,
                )
            )

        other = session_factory()
        try:
            assert other.query(Booking).count() == 1
        finally:
            other.close()


class CancelledMeanwhile(BookingRepository):
    """Lets another session cancel the booking right after the first read"""

    def __init__(self, other_service, actor):
        self.other_service = other_service
        self.actor = actor
        self.fired = False

    def get_booking_by_id(self, db, booking_id):
        booking = super().get_booking_by_id(db, booking_id)
        if not self.fired:
            self.fired = True
            self.other_service.cancel_booking(self.actor, booking_id)
        return booking


class TestLockedReread:
    def test_for_update_sees_committed_change(self, session_factory, db, bd_user):
        booking = seed_booking(db, bd_user, START, END)
        repo = BookingRepository()
        first = session_factory()
        second = session_factory()
        try:
            held = repo.get_booking_by_id(first, booking.id)
            assert held.status == BookingStatus.SCHEDULED

            second.get(Booking, booking.id).status = BookingStatus.CANCELLED
            second.commit()

            locked = repo.get_booking_for_update(first, booking.id)
            assert locked is held
            assert locked.status == BookingStatus.CANCELLED
        finally:
            first.close()
            second.close()

    def test_concurrent_cancel_logs_once(self, session_factory, db, bd_user, lead, working_geocoder):
        booking = seed_booking(db, bd_user, START, END, lead_id=lead.id)
        first = session_factory()
        second = session_factory()
        try:
            actor = first.get(User, bd_user.id)
            other_service = BookingLifecycleManager(second, working_geocoder)
            service = BookingLifecycleManager(first, working_geocoder)
            service.repo = CancelledMeanwhile(other_service, second.get(User, bd_user.id))

            with pytest.raises(InvalidStateError):
                service.cancel_booking(actor, booking.id)
        finally:
            first.close()
            second.close()

        notes = [e.metadata_["note"] for e in db.query(ActivityLog).all()]
        assert notes == ["Meeting cancelled: Existing meeting"]
