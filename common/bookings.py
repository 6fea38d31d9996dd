"""Booking lifecycle: slot conflict detection, batch creation and status changes.

A *slot* is a ``(service_id, scheduled_at)`` pair. At most one booking may
hold a slot; the pre-insert query gives callers a readable conflict message and
the ``uq_bookings_service_slot`` constraint catches whatever races past it.
Bookings can only be edited or deleted while they are still pending.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .database import transaction
from .dependencies import has_any_role
from .errors import ConflictError, ForbiddenError, NotFoundError, RequestValidationFailed, field_error
from .models import Booking, BookingStatus, RoleEnum, Service, User, generate_unique_id
from .notifications import BookingStatusChange
from .schemas import BookingBatchCreate, BookingRead, BookingUpdate

logger = logging.getLogger(__name__)

Slot = Tuple[int, datetime]

SLOT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_slot(service_name: str, scheduled_at: datetime) -> str:
    return f"{service_name} at {scheduled_at.strftime(SLOT_TIME_FORMAT)}"


def conflict_message(descriptions: Iterable[str]) -> str:
    return (
        "The following slot(s) are already booked: "
        + ", ".join(descriptions)
        + ". Please pick a different time schedule."
    )


def find_conflicts(db: Session, slots: Sequence[Slot], exclude_booking_id: Optional[int] = None) -> List[Booking]:
    """Existing bookings that hold any of ``slots``, fetched in a single query."""

    if not slots:
        return []
    matches_any_slot = or_(
        *(and_(Booking.service_id == service_id, Booking.scheduled_at == scheduled_at) for service_id, scheduled_at in slots)
    )
    query = db.query(Booking).options(selectinload(Booking.service)).filter(matches_any_slot)
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.order_by(Booking.scheduled_at, Booking.service_id).all()


def ensure_slots_free(db: Session, slots: Sequence[Slot], exclude_booking_id: Optional[int] = None) -> None:
    existing = find_conflicts(db, slots, exclude_booking_id=exclude_booking_id)
    if existing:
        raise ConflictError(conflict_message(format_slot(b.service.name, b.scheduled_at) for b in existing))


def load_bookings(db: Session, booking_ids: Sequence[int]) -> List[Booking]:
    """Bookings by id with their service and user eagerly loaded, in id order."""

    if not booking_ids:
        return []
    return (
        db.query(Booking)
        .options(selectinload(Booking.service), selectinload(Booking.user))
        .filter(Booking.id.in_(booking_ids))
        .order_by(Booking.id)
        .all()
    )


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = (
        db.query(Booking)
        .options(selectinload(Booking.service), selectinload(Booking.user))
        .filter(Booking.id == booking_id)
        .first()
    )
    if not booking:
        raise NotFoundError("Booking not found.")
    return booking


def ensure_can_access(booking: Booking, user: User) -> None:
    if not (has_any_role(user, {RoleEnum.ADMIN}) or booking.user_id == user.id):
        raise ForbiddenError("You are not allowed to access this booking.")


def ensure_pending(booking: Booking, action: str) -> None:
    if booking.status != BookingStatus.PENDING:
        raise ForbiddenError(f"Cannot {action} booking once it is {booking.status.value}.")


def _future_time_error(loc: Sequence, now: datetime) -> dict:
    return field_error(loc, f"The scheduled time must be after {now.strftime(SLOT_TIME_FORMAT)}.")


def _resolve_owner(db: Session, requested_user_id: Optional[int], requester: User) -> int:
    if requested_user_id is None or requested_user_id == requester.id:
        return requester.id
    if not has_any_role(requester, {RoleEnum.ADMIN}):
        raise ForbiddenError("You can only create bookings for your own account.")
    if db.get(User, requested_user_id) is None:
        raise RequestValidationFailed(
            [field_error(("body", "user_id"), "The selected user id is invalid.", "missing_reference")]
        )
    return requested_user_id


def _validate_batch(db: Session, request: BookingBatchCreate, now: datetime) -> Dict[int, Service]:
    service_ids = {item.service_id for item in request.bookings}
    services = {s.id: s for s in db.query(Service).filter(Service.id.in_(service_ids)).all()}

    errors = []
    for index, item in enumerate(request.bookings):
        if item.service_id not in services:
            errors.append(
                field_error(
                    ("body", "bookings", index, "service_id"),
                    "The selected service id is invalid.",
                    "missing_reference",
                )
            )
        if item.scheduled_at <= now:
            errors.append(_future_time_error(("body", "bookings", index, "scheduled_at"), now))
    if errors:
        raise RequestValidationFailed(errors)
    return services


def create_bookings(db: Session, request: BookingBatchCreate, requester: User, now: datetime) -> List[Booking]:
    """Create every booking in ``request`` or none of them.

    Each created booking starts as pending and gets its own unique_id.
    """

    owner_id = _resolve_owner(db, request.user_id, requester)
    services = _validate_batch(db, request, now)

    slots: List[Slot] = [(item.service_id, item.scheduled_at) for item in request.bookings]
    repeated = [slot for slot, count in Counter(slots).items() if count > 1]
    if repeated:
        raise ConflictError(conflict_message(format_slot(services[sid].name, at) for sid, at in repeated))

    ensure_slots_free(db, slots)

    bookings = [
        Booking(
            service_id=service_id,
            user_id=owner_id,
            contact_name=request.contact_name,
            contact_phone=request.contact_phone,
            service_location=request.service_location,
            scheduled_at=scheduled_at,
            status=BookingStatus.PENDING,
            unique_id=generate_unique_id(),
        )
        for service_id, scheduled_at in slots
    ]
    try:
        with transaction(db):
            db.add_all(bookings)
    except IntegrityError:
        logger.warning("Slot constraint rejected batch for user %s: %s", owner_id, slots)
        ensure_slots_free(db, slots)
        raise

    logger.info("Created %d booking(s) for user %s", len(bookings), owner_id)
    return load_bookings(db, [b.id for b in bookings])


def update_booking(db: Session, booking_id: int, patch: BookingUpdate, actor: User, now: datetime) -> Booking:
    booking = get_booking(db, booking_id)
    ensure_can_access(booking, actor)
    ensure_pending(booking, "update")

    data = patch.model_dump(exclude_unset=True)
    new_time = data.get("scheduled_at")
    if new_time is not None:
        if new_time <= now:
            raise RequestValidationFailed([_future_time_error(("body", "scheduled_at"), now)])
        if new_time != booking.scheduled_at:
            ensure_slots_free(db, [(booking.service_id, new_time)], exclude_booking_id=booking.id)

    try:
        with transaction(db):
            for key, value in data.items():
                setattr(booking, key, value)
    except IntegrityError:
        if new_time is not None:
            ensure_slots_free(db, [(booking.service_id, new_time)], exclude_booking_id=booking_id)
        raise

    return get_booking(db, booking_id)


def delete_booking(db: Session, booking_id: int, actor: User) -> None:
    booking = get_booking(db, booking_id)
    ensure_can_access(booking, actor)
    ensure_pending(booking, "delete")
    with transaction(db):
        db.delete(booking)
    logger.info("Deleted booking %s", booking_id)


def update_status(
    db: Session, booking_id: int, new_status: BookingStatus
) -> Tuple[Booking, Optional[BookingStatusChange]]:
    """Persist ``new_status`` and describe the change for the notifier.

    Setting the status a booking already has writes nothing and yields no change.
    """

    booking = get_booking(db, booking_id)
    previous_status = booking.status
    if previous_status == new_status:
        logger.info("Booking %s already %s; skipping update", booking_id, new_status.value)
        return booking, None

    with transaction(db):
        booking.status = new_status

    booking = get_booking(db, booking_id)
    logger.info("Booking %s status %s -> %s", booking_id, previous_status.value, new_status.value)
    change = BookingStatusChange(
        recipient_email=booking.user.email,
        booking=BookingRead.model_validate(booking),
        previous_status=previous_status,
        new_status=new_status,
    )
    return booking, change


def get_status_by_unique_id(db: Session, unique_id: str) -> List[Booking]:
    return (
        db.query(Booking)
        .options(selectinload(Booking.service))
        .filter(Booking.unique_id == unique_id)
        .order_by(Booking.id)
        .all()
    )


def list_bookings(db: Session, page: int = 1, per_page: int = 15, user_id: Optional[int] = None) -> List[Booking]:
    query = db.query(Booking).options(selectinload(Booking.service), selectinload(Booking.user))
    if user_id is not None:
        query = query.filter(Booking.user_id == user_id)
    return query.order_by(Booking.scheduled_at.desc()).offset((page - 1) * per_page).limit(per_page).all()


def count_bookings(db: Session, user_id: Optional[int] = None) -> int:
    query = db.query(Booking)
    if user_id is not None:
        query = query.filter(Booking.user_id == user_id)
    return query.count()
