from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger, lifecycle
from .db import get_db
from .errors import NotFound, ValidationFailed
from .models import Guest
from .publisher import transaction
from .rbac import has_role, require_admin
from .responses import ok
from .schemas import (
    AdjustBlockedRequest,
    AvailabilityOut,
    AvailabilityRange,
    BookingList,
    BookingOut,
    CancelBookingRequest,
    CreateBookingRequest,
    Envelope,
    SeedInventoryRequest,
    SeedInventoryResult,
    UpdateStatusRequest,
)
from .security import get_optional_user

router = APIRouter()


def _actor(user: dict) -> str:
    return f"admin:{user.get('sub')}"


# ================= BOOKINGS =================

@router.post("/bookings", response_model=Envelope[BookingOut], status_code=201, tags=["Bookings"])
async def create_booking(data: CreateBookingRequest, request: Request, db: AsyncSession = Depends(get_db)):
    async with transaction(db):
        guest_id = data.guest_id
        if data.guest is not None:
            guest = await lifecycle.get_or_create_guest(db, **data.guest.model_dump())
            guest_id = guest.id

        booking = await lifecycle.create_booking(
            db,
            hotel_id=data.hotel_id,
            room_type_id=data.room_type_id,
            guest_id=guest_id,
            check_in=data.check_in_date,
            check_out=data.check_out_date,
            adults=data.adults,
            children=data.children,
            rooms=data.rooms,
            rate_plan_id=data.rate_plan_id,
            special_requests=data.special_requests,
        )
    return ok(request, BookingOut.model_validate(booking))


@router.get("/bookings/lookup", response_model=Envelope[BookingOut], tags=["Bookings"])
async def lookup_booking(
    request: Request,
    confirmation_code: str = Query(alias="confirmationCode", min_length=4),
    email: str = Query(min_length=3),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.get_by_confirmation_code(db, confirmation_code)
    guest = await db.get(Guest, booking.guest_id)
    if not guest or guest.email != email.strip().lower():
        raise NotFound("Booking not found")
    return ok(request, BookingOut.model_validate(booking))


@router.get("/bookings", response_model=Envelope[BookingList], tags=["Bookings"])
async def list_bookings(
    request: Request,
    hotel_id: int | None = Query(None, alias="hotelId"),
    status: str | None = Query(None),
    check_in_date: date | None = Query(None, alias="checkInDate"),
    check_out_date: date | None = Query(None, alias="checkOutDate"),
    guest_email: str | None = Query(None, alias="guestEmail"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if status and status not in lifecycle.STATUSES:
        raise ValidationFailed(f"Unknown status: {status}")

    bookings, total = await lifecycle.list_bookings(
        db,
        hotel_id=hotel_id,
        status=status,
        check_in_from=check_in_date,
        check_out_to=check_out_date,
        guest_email=guest_email,
        limit=limit,
        offset=offset,
    )
    return ok(
        request,
        BookingList(
            bookings=[BookingOut.model_validate(b) for b in bookings],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(bookings) < total,
        ),
    )


@router.get("/bookings/{booking_id}", response_model=Envelope[BookingOut], tags=["Bookings"])
async def get_booking(booking_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    booking = await lifecycle.get_booking(db, booking_id)
    return ok(request, BookingOut.model_validate(booking))


@router.post("/bookings/{booking_id}/cancel", response_model=Envelope[BookingOut], tags=["Bookings"])
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    request: Request,
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    async with transaction(db):
        if has_role(user, ["admin"]):
            actor = _actor(user)
        else:
            if not data.email:
                raise ValidationFailed("email is required to cancel a booking")
            booking = await lifecycle.get_booking(db, booking_id)
            guest = await db.get(Guest, booking.guest_id)
            if not guest or guest.email != data.email.lower():
                raise NotFound("Booking not found")
            actor = "guest"

        booking = await lifecycle.cancel_booking(db, booking_id, data.reason, actor)
    return ok(request, BookingOut.model_validate(booking))


@router.patch("/bookings/{booking_id}", response_model=Envelope[BookingOut], tags=["Bookings"])
async def update_booking_status(
    booking_id: str,
    data: UpdateStatusRequest,
    request: Request,
    user=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    async with transaction(db):
        booking = await lifecycle.update_status(db, booking_id, data.status, data.notes, _actor(user))
    return ok(request, BookingOut.model_validate(booking))


# ================= AVAILABILITY =================

@router.get("/availability", response_model=Envelope[AvailabilityRange], tags=["Availability"])
async def get_availability(
    request: Request,
    hotel_id: int = Query(alias="hotelId"),
    start_date: date = Query(alias="startDate"),
    end_date: date = Query(alias="endDate"),
    room_type_id: int | None = Query(None, alias="roomTypeId"),
    db: AsyncSession = Depends(get_db),
):
    records = await ledger.get_availability_range(db, hotel_id, room_type_id, start_date, end_date)
    return ok(
        request,
        AvailabilityRange(
            hotel_id=hotel_id,
            start_date=start_date,
            end_date=end_date,
            records=[AvailabilityOut.model_validate(r) for r in records],
        ),
    )


@router.post("/availability", response_model=Envelope[AvailabilityOut], tags=["Availability"])
async def adjust_availability(
    data: AdjustBlockedRequest,
    request: Request,
    user=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    async with transaction(db):
        record = await ledger.adjust_blocked(db, data.hotel_id, data.room_type_id, data.night, data.delta)
    return ok(request, AvailabilityOut.model_validate(record))


@router.put("/availability", response_model=Envelope[SeedInventoryResult], tags=["Availability"])
async def seed_availability(
    data: SeedInventoryRequest,
    request: Request,
    user=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    async with transaction(db):
        nights = await ledger.seed_inventory(
            db, data.hotel_id, data.room_type_id, data.start_date, data.end_date, data.total_rooms
        )
    return ok(request, SeedInventoryResult(nights=nights))
