import os
from datetime import date, datetime
from decimal import Decimal
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import get_password_hash, issue_user_token  # noqa: E402
from common.clock import get_clock  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.models import Category, Discount, DiscountType, RoleEnum, Service, User  # noqa: E402
from common.notifications import BookingStatusChange, NotificationDispatcher, get_notification_dispatcher  # noqa: E402
from common.seed import get_role, seed_roles  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.catalog.app import app as catalog_app  # noqa: E402
from services.catalog.app import service_list_cache  # noqa: E402
from services.users.app import app as users_app  # noqa: E402

NOW = datetime(2026, 5, 1, 9, 0, 0)
PASSWORD = "Passw0rd!"


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent: List[BookingStatusChange] = []

    async def send(self, change: BookingStatusChange) -> None:
        self.sent.append(change)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_roles(db)
    service_list_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clock() -> Generator[FrozenClock, None, None]:
    frozen = FrozenClock(NOW)
    for fastapi_app in (bookings_app, catalog_app):
        fastapi_app.dependency_overrides[get_clock] = lambda: frozen
    yield frozen
    for fastapi_app in (bookings_app, catalog_app):
        fastapi_app.dependency_overrides.pop(get_clock, None)


@pytest.fixture(autouse=True)
def dispatcher() -> Generator[RecordingDispatcher, None, None]:
    recorder = RecordingDispatcher()
    bookings_app.dependency_overrides[get_notification_dispatcher] = lambda: recorder
    yield recorder
    bookings_app.dependency_overrides.pop(get_notification_dispatcher, None)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def users_client() -> Generator[TestClient, None, None]:
    with TestClient(users_app) as client:
        yield client


@pytest.fixture()
def catalog_client() -> Generator[TestClient, None, None]:
    with TestClient(catalog_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


def create_user(db, role: RoleEnum, email: str, name: str = "Test User") -> User:
    user = User(
        name=name,
        email=email,
        phone="+1-555-0100",
        address="1 Main St",
        hashed_password=get_password_hash(PASSWORD),
        role_id=get_role(db, role).id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def headers_for(user: User) -> dict[str, str]:
    token, _ = issue_user_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin(db_session) -> User:
    return create_user(db_session, RoleEnum.ADMIN, "admin@example.com", name="Admin")


@pytest.fixture()
def customer(db_session) -> User:
    return create_user(db_session, RoleEnum.CUSTOMER, "customer@example.com", name="Jane Customer")


@pytest.fixture()
def other_customer(db_session) -> User:
    return create_user(db_session, RoleEnum.CUSTOMER, "other@example.com", name="Other Customer")


@pytest.fixture()
def employee(db_session) -> User:
    return create_user(db_session, RoleEnum.EMPLOYEE, "employee@example.com", name="Eve Employee")


@pytest.fixture()
def admin_headers(admin) -> dict[str, str]:
    return headers_for(admin)


@pytest.fixture()
def customer_headers(customer) -> dict[str, str]:
    return headers_for(customer)


@pytest.fixture()
def make_user(db_session):
    def factory(role: RoleEnum, email: str, name: str = "Test User") -> User:
        return create_user(db_session, role, email, name=name)

    return factory


@pytest.fixture()
def auth_headers():
    return headers_for


@pytest.fixture()
def make_service(db_session):
    def factory(name: str = "Deep Cleaning", price: str = "100.00", discount: Discount | None = None) -> Service:
        category = db_session.query(Category).filter(Category.name == "Cleaning").first()
        if category is None:
            category = Category(name="Cleaning", description="Home cleaning services")
            db_session.add(category)
            db_session.flush()
        service = Service(
            category_id=category.id,
            name=name,
            price=Decimal(price),
            description=f"{name} description",
            discount_id=discount.id if discount else None,
        )
        db_session.add(service)
        db_session.commit()
        db_session.refresh(service)
        return service

    return factory


@pytest.fixture()
def make_discount(db_session):
    def factory(
        code: str = "SPRING",
        type: DiscountType = DiscountType.PERCENTAGE,
        value: str = "10.00",
        start_date: date = date(2026, 4, 1),
        end_date: date = date(2026, 5, 31),
    ) -> Discount:
        discount = Discount(code=code, type=type, value=Decimal(value), start_date=start_date, end_date=end_date)
        db_session.add(discount)
        db_session.commit()
        db_session.refresh(discount)
        return discount

    return factory
