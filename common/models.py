"""SQLAlchemy models shared across all services."""
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .clock import utcnow
from .database import Base


class RoleEnum(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    CUSTOMER = "customer"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def generate_unique_id() -> str:
    return str(uuid.uuid4())


service_employee = Table(
    "service_employee",
    Base.metadata,
    Column("service_id", ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[RoleEnum] = mapped_column(SqlEnum(RoleEnum), unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)

    users: Mapped[List["User"]] = relationship(back_populates="role")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    phone: Mapped[str] = mapped_column(String(20))
    address: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    hashed_password: Mapped[str] = mapped_column(String(255))
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    role: Mapped[Role] = relationship(back_populates="users", lazy="joined")
    bookings: Mapped[List["Booking"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    services: Mapped[List["Service"]] = relationship(secondary=service_employee, back_populates="employees")

    @property
    def role_name(self) -> RoleEnum:
        return self.role.name


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)

    services: Mapped[List["Service"]] = relationship(back_populates="category", cascade="all, delete-orphan")


class Discount(Base):
    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(50), unique=True)
    type: Mapped[DiscountType] = mapped_column(SqlEnum(DiscountType))
    value: Mapped[Decimal] = mapped_column(Numeric(8, 2))
    start_date: Mapped[date] = mapped_column(Date, index=True)
    end_date: Mapped[date] = mapped_column(Date, index=True)

    services: Mapped[List["Service"]] = relationship(back_populates="discount")


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    discount_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("discounts.id", ondelete="SET NULL"), default=None, index=True
    )

    category: Mapped[Category] = relationship(back_populates="services")
    discount: Mapped[Optional[Discount]] = relationship(back_populates="services")
    employees: Mapped[List[User]] = relationship(secondary=service_employee, back_populates="services")
    bookings: Mapped[List["Booking"]] = relationship(back_populates="service", cascade="all, delete-orphan")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (UniqueConstraint("service_id", "scheduled_at", name="uq_bookings_service_slot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    contact_name: Mapped[str] = mapped_column(String(255))
    contact_phone: Mapped[str] = mapped_column(String(20), index=True)
    service_location: Mapped[str] = mapped_column(String(255), index=True)
    unique_id: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=generate_unique_id)
    status: Mapped[BookingStatus] = mapped_column(
        SqlEnum(BookingStatus), default=BookingStatus.PENDING, index=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    service: Mapped[Service] = relationship(back_populates="bookings")
    user: Mapped[User] = relationship(back_populates="bookings")
