"""Pydantic schemas shared across the services."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import BookingStatus, DiscountType, RoleEnum

_SYMBOL = re.compile(r"[^A-Za-z0-9]")


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# Users and roles


class UserRegister(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    phone: str = Field(..., max_length=15)
    address: Optional[str] = Field(None, max_length=255)
    password: str = Field(..., min_length=8)
    password_confirmation: str

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        if value.lower() == value or value.upper() == value:
            raise ValueError("Password must contain both upper and lower case letters")
        if not _SYMBOL.search(value):
            raise ValueError("Password must contain at least one symbol")
        return value

    @model_validator(mode="after")
    def passwords_match(self) -> "UserRegister":
        if self.password != self.password_confirmation:
            raise ValueError("Password confirmation does not match")
        return self


class EmployeeRegister(UserRegister):
    role_id: int


class UserRead(BaseModel):
    id: int
    name: str
    email: EmailStr
    phone: str
    address: Optional[str] = None
    role_id: int
    role_name: RoleEnum

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    message: str
    user: UserRead
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class RoleCreate(BaseModel):
    name: RoleEnum
    description: Optional[str] = None


class RoleUpdate(BaseModel):
    description: Optional[str] = None


class RoleUserSummary(BaseModel):
    id: int
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class RoleRead(BaseModel):
    id: int
    name: RoleEnum
    description: Optional[str] = None
    users_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class RoleDetail(RoleRead):
    users: List[RoleUserSummary] = []


# Catalog


class CategoryBase(BaseModel):
    name: str = Field(..., max_length=255)
    description: Optional[str] = None


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None


class CategorySummary(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class CategoryRead(CategoryBase):
    id: int
    services_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ServiceSummary(BaseModel):
    id: int
    name: str
    price: float
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CategoryDetail(CategoryRead):
    services: List[ServiceSummary] = []


class DiscountBase(BaseModel):
    code: str = Field(..., max_length=50)
    type: DiscountType
    value: Decimal = Field(..., ge=0, max_digits=8, decimal_places=2)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_window_and_value(self) -> "DiscountBase":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        if self.type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage discounts cannot exceed 100")
        return self


class DiscountCreate(DiscountBase):
    pass


class DiscountUpdate(BaseModel):
    code: Optional[str] = Field(None, max_length=50)
    type: Optional[DiscountType] = None
    value: Optional[Decimal] = Field(None, ge=0, max_digits=8, decimal_places=2)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class DiscountRead(BaseModel):
    id: int
    code: str
    type: DiscountType
    value: float
    start_date: date
    end_date: date
    service_ids: List[int] = []

    model_config = ConfigDict(from_attributes=True)


class EmployeeSummary(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class ServiceCreate(BaseModel):
    category_id: int
    name: str = Field(..., max_length=255)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    description: Optional[str] = None
    discount_id: Optional[int] = None
    employee_ids: List[int] = []


class ServiceUpdate(BaseModel):
    category_id: Optional[int] = None
    name: Optional[str] = Field(None, max_length=255)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    description: Optional[str] = None
    discount_id: Optional[int] = None
    employee_ids: Optional[List[int]] = None


class ServiceRead(BaseModel):
    id: int
    name: str
    price: float
    description: Optional[str] = None
    category_id: int
    discount_id: Optional[int] = None
    discounted_price: float = 0.0
    category: Optional[CategorySummary] = None
    discount: Optional[DiscountRead] = None
    employees: List[EmployeeSummary] = []


# Bookings


class BookingSlot(BaseModel):
    service_id: int
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, value: datetime) -> datetime:
        return _as_naive_utc(value)


MAX_BATCH_SIZE = 100


class BookingBatchCreate(BaseModel):
    bookings: List[BookingSlot] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)
    user_id: Optional[int] = None
    contact_name: str = Field(..., max_length=255)
    contact_phone: str = Field(..., max_length=20)
    service_location: str = Field(..., max_length=255)


class BookingUpdate(BaseModel):
    contact_name: Optional[str] = Field(None, max_length=255)
    contact_phone: Optional[str] = Field(None, max_length=20)
    service_location: Optional[str] = Field(None, max_length=255)
    scheduled_at: Optional[datetime] = None

    @field_validator("contact_name", "contact_phone", "service_location", "scheduled_at", mode="before")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field may be omitted but not null")
        return value

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, value: datetime) -> datetime:
        return _as_naive_utc(value)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus

    @field_validator("status")
    @classmethod
    def not_pending(cls, value: BookingStatus) -> BookingStatus:
        if value == BookingStatus.PENDING:
            raise ValueError("Status must be one of: confirmed, cancelled, completed")
        return value


class BookingServiceInfo(BaseModel):
    id: int
    name: str
    price: float
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BookingUserInfo(BaseModel):
    id: int
    name: str
    email: str
    phone: str
    address: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BookingRead(BaseModel):
    id: int
    service_id: int
    user_id: int
    contact_name: str
    contact_phone: str
    service_location: str
    scheduled_at: datetime
    status: BookingStatus
    unique_id: str
    created_at: datetime
    updated_at: datetime
    service: BookingServiceInfo
    user: BookingUserInfo

    model_config = ConfigDict(from_attributes=True)


class BookingBatchRead(BaseModel):
    message: str
    bookings: List[BookingRead]


class BookingStatusRead(BaseModel):
    unique_id: str
    status: BookingStatus
    scheduled_at: datetime
    service_name: str
