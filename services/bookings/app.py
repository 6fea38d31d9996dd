from contextlib import asynccontextmanager
from typing import List

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common import bookings as booking_service
from common.clock import Clock, get_clock
from common.config import get_settings
from common.database import Base, SessionLocal, engine, get_db
from common.dependencies import allow_roles, get_current_active_user
from common.errors import register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Booking, RoleEnum, User
from common.notifications import NotificationDispatcher, deliver_status_change, get_notification_dispatcher
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    BookingBatchCreate,
    BookingBatchRead,
    BookingRead,
    BookingStatusRead,
    BookingStatusUpdate,
    BookingUpdate,
)
from common.seed import seed_roles

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            seed_roles(db)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Total-Count", "X-Last-Page"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app, include_in_schema=False)
    return fastapi_app


app = create_app()


def set_page_headers(response: Response, total: int, per_page: int) -> None:
    response.headers["X-Total-Count"] = str(total)
    response.headers["X-Last-Page"] = str(max(1, (total + per_page - 1) // per_page))


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.get("/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_bookings(
    request: Request,
    response: Response,
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    _: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.EMPLOYEE)),
    db: Session = Depends(get_db),
) -> List[Booking]:
    set_page_headers(response, booking_service.count_bookings(db), per_page)
    return booking_service.list_bookings(db, page=page, per_page=per_page)


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_my_bookings(
    request: Request,
    response: Response,
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Booking]:
    set_page_headers(response, booking_service.count_bookings(db, user_id=current_user.id), per_page)
    return booking_service.list_bookings(db, page=page, per_page=per_page, user_id=current_user.id)


@app.get("/bookings/status/{unique_id}", response_model=List[BookingStatusRead])
@limiter.limit("40/minute")
def booking_status_by_unique_id(request: Request, unique_id: str, db: Session = Depends(get_db)) -> List[BookingStatusRead]:
    return [
        BookingStatusRead(
            unique_id=booking.unique_id,
            status=booking.status,
            scheduled_at=booking.scheduled_at,
            service_name=booking.service.name,
        )
        for booking in booking_service.get_status_by_unique_id(db, unique_id)
    ]


@app.post("/bookings", response_model=BookingBatchRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_bookings(
    request: Request,
    booking_in: BookingBatchCreate,
    current_user: User = Depends(get_current_active_user),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> BookingBatchRead:
    created = booking_service.create_bookings(db, booking_in, current_user, now=clock())
    return BookingBatchRead(
        message="Bookings created successfully.",
        bookings=[BookingRead.model_validate(b) for b in created],
    )


@app.get("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def get_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    booking = booking_service.get_booking(db, booking_id)
    booking_service.ensure_can_access(booking, current_user)
    return booking


@app.patch("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking(
    request: Request,
    booking_id: int,
    booking_update: BookingUpdate,
    current_user: User = Depends(get_current_active_user),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> Booking:
    return booking_service.update_booking(db, booking_id, booking_update, current_user, now=clock())


@app.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
def delete_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Response:
    booking_service.delete_booking(db, booking_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.patch("/bookings/{booking_id}/status", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking_status(
    request: Request,
    booking_id: int,
    status_update: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    db: Session = Depends(get_db),
) -> Booking:
    booking, change = booking_service.update_status(db, booking_id, status_update.status)
    if change is not None:
        background_tasks.add_task(deliver_status_change, dispatcher, change)
    return booking
