from contextlib import asynccontextmanager
from datetime import date
from typing import Iterable, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from common.cache import SimpleTTLCache, service_listing_key
from common.clock import Clock, get_clock
from common.config import get_settings
from common.database import Base, SessionLocal, engine, get_db, transaction
from common.dependencies import allow_roles
from common.errors import NotFoundError, RequestValidationFailed, field_error, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Category, Discount, RoleEnum, Service, User
from common.pricing import discounted_price
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    CategoryCreate,
    CategoryDetail,
    CategoryRead,
    CategorySummary,
    CategoryUpdate,
    DiscountBase,
    DiscountCreate,
    DiscountRead,
    DiscountUpdate,
    EmployeeSummary,
    ServiceCreate,
    ServiceRead,
    ServiceSummary,
    ServiceUpdate,
)
from common.seed import seed_roles

settings = get_settings()
service_list_cache: SimpleTTLCache[List[ServiceRead]] = SimpleTTLCache(ttl=settings.service_cache_ttl)

admin_only = allow_roles(RoleEnum.ADMIN)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            seed_roles(db)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Catalog Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "catalog")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app, include_in_schema=False)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "catalog"}


def _discount_read(discount: Discount) -> DiscountRead:
    return DiscountRead(
        id=discount.id,
        code=discount.code,
        type=discount.type,
        value=float(discount.value),
        start_date=discount.start_date,
        end_date=discount.end_date,
        service_ids=[s.id for s in discount.services],
    )


def _service_read(service: Service, today: date) -> ServiceRead:
    return ServiceRead(
        id=service.id,
        name=service.name,
        price=float(service.price),
        description=service.description,
        category_id=service.category_id,
        discount_id=service.discount_id,
        discounted_price=float(discounted_price(service.price, service.discount, today)),
        category=CategorySummary.model_validate(service.category) if service.category else None,
        discount=_discount_read(service.discount) if service.discount else None,
        employees=[EmployeeSummary.model_validate(e) for e in service.employees],
    )


def _service_query(db: Session):
    return db.query(Service).options(
        selectinload(Service.category),
        selectinload(Service.discount).selectinload(Discount.services),
        selectinload(Service.employees),
    )


def _get_service(db: Session, service_id: int) -> Service:
    service = _service_query(db).filter(Service.id == service_id).first()
    if not service:
        raise NotFoundError("Service not found.")
    return service


def _get_category(db: Session, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if not category:
        raise NotFoundError("Category not found.")
    return category


def _get_discount(db: Session, discount_id: int) -> Discount:
    discount = db.query(Discount).options(selectinload(Discount.services)).filter(Discount.id == discount_id).first()
    if not discount:
        raise NotFoundError("Discount not found.")
    return discount


def _ensure_unique(db: Session, model, column, value: str, field: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(model).filter(column == value)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first():
        raise RequestValidationFailed(
            [field_error(("body", field), f"The {field} has already been taken.", "unique")]
        )


def _resolve_references(
    db: Session,
    category_id: Optional[int],
    discount_id: Optional[int],
    employee_ids: Optional[Iterable[int]],
) -> List[User]:
    errors = []
    if category_id is not None and db.get(Category, category_id) is None:
        errors.append(field_error(("body", "category_id"), "The selected category id is invalid.", "missing_reference"))
    if discount_id is not None and db.get(Discount, discount_id) is None:
        errors.append(field_error(("body", "discount_id"), "The selected discount id is invalid.", "missing_reference"))
    employees: List[User] = []
    if employee_ids:
        wanted = set(employee_ids)
        employees = db.query(User).filter(User.id.in_(wanted)).all()
        for missing in sorted(wanted - {e.id for e in employees}):
            errors.append(
                field_error(("body", "employee_ids"), f"The selected employee id {missing} is invalid.", "missing_reference")
            )
    if errors:
        raise RequestValidationFailed(errors)
    return employees


# Categories


@app.get("/categories", response_model=List[CategoryRead])
@limiter.limit("60/minute")
def list_categories(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    db: Session = Depends(get_db),
) -> List[CategoryRead]:
    rows = (
        db.query(Category, func.count(Service.id))
        .outerjoin(Service, Service.category_id == Category.id)
        .group_by(Category.id)
        .order_by(Category.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return [
        CategoryRead(id=category.id, name=category.name, description=category.description, services_count=count)
        for category, count in rows
    ]


@app.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_category(
    request: Request,
    category_in: CategoryCreate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Category:
    _ensure_unique(db, Category, Category.name, category_in.name, "name")
    category = Category(**category_in.model_dump())
    with transaction(db):
        db.add(category)
    db.refresh(category)
    return category


@app.get("/categories/{category_id}", response_model=CategoryDetail)
@limiter.limit("60/minute")
def get_category(request: Request, category_id: int, db: Session = Depends(get_db)) -> CategoryDetail:
    category = _get_category(db, category_id)
    return CategoryDetail(
        id=category.id,
        name=category.name,
        description=category.description,
        services_count=len(category.services),
        services=[ServiceSummary.model_validate(s) for s in category.services],
    )


@app.put("/categories/{category_id}", response_model=CategoryRead)
@limiter.limit("15/minute")
def update_category(
    request: Request,
    category_id: int,
    category_update: CategoryUpdate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> CategoryRead:
    category = _get_category(db, category_id)
    data = category_update.model_dump(exclude_unset=True)
    if data.get("name") is not None:
        _ensure_unique(db, Category, Category.name, data["name"], "name", exclude_id=category.id)
    with transaction(db):
        for key, value in data.items():
            if key == "name" and value is None:
                continue
            setattr(category, key, value)
    service_list_cache.clear()
    return CategoryRead(
        id=category.id,
        name=category.name,
        description=category.description,
        services_count=len(category.services),
    )


@app.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_category(
    request: Request,
    category_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Response:
    category = _get_category(db, category_id)
    with transaction(db):
        db.delete(category)
    service_list_cache.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Services


@app.get("/services", response_model=List[ServiceRead])
@limiter.limit("60/minute")
def list_services(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> List[ServiceRead]:
    today = clock().date()

    def load() -> List[ServiceRead]:
        services = _service_query(db).order_by(Service.id).offset((page - 1) * per_page).limit(per_page).all()
        return [_service_read(s, today) for s in services]

    return service_list_cache.get_or_set(service_listing_key(page, per_page, today), load)


@app.get("/services/{service_id}", response_model=ServiceRead)
@limiter.limit("60/minute")
def get_service(
    request: Request,
    service_id: int,
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> ServiceRead:
    return _service_read(_get_service(db, service_id), clock().date())


@app.post("/services", response_model=ServiceRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_service(
    request: Request,
    service_in: ServiceCreate,
    _: User = Depends(admin_only),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> ServiceRead:
    _ensure_unique(db, Service, Service.name, service_in.name, "name")
    employees = _resolve_references(db, service_in.category_id, service_in.discount_id, service_in.employee_ids)
    service = Service(**service_in.model_dump(exclude={"employee_ids"}))
    service.employees = employees
    with transaction(db):
        db.add(service)
    service_list_cache.clear()
    return _service_read(_get_service(db, service.id), clock().date())


@app.put("/services/{service_id}", response_model=ServiceRead)
@limiter.limit("15/minute")
def update_service(
    request: Request,
    service_id: int,
    service_update: ServiceUpdate,
    _: User = Depends(admin_only),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
) -> ServiceRead:
    service = _get_service(db, service_id)
    data = service_update.model_dump(exclude_unset=True)
    if data.get("name") is not None:
        _ensure_unique(db, Service, Service.name, data["name"], "name", exclude_id=service.id)
    employee_ids = data.pop("employee_ids", None)
    employees = _resolve_references(db, data.get("category_id"), data.get("discount_id"), employee_ids)

    with transaction(db):
        for key, value in data.items():
            # Only discount_id and description may be cleared explicitly.
            if value is None and key not in {"discount_id", "description"}:
                continue
            setattr(service, key, value)
        if "employee_ids" in service_update.model_fields_set:
            service.employees = employees
    service_list_cache.clear()
    return _service_read(_get_service(db, service_id), clock().date())


@app.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_service(
    request: Request,
    service_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Response:
    service = _get_service(db, service_id)
    with transaction(db):
        db.delete(service)
    service_list_cache.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Discounts


@app.get("/discounts", response_model=List[DiscountRead])
@limiter.limit("30/minute")
def list_discounts(request: Request, _: User = Depends(admin_only), db: Session = Depends(get_db)) -> List[DiscountRead]:
    discounts = (
        db.query(Discount)
        .options(selectinload(Discount.services))
        .order_by(Discount.start_date.desc(), Discount.id.desc())
        .all()
    )
    return [_discount_read(d) for d in discounts]


@app.post("/discounts", response_model=DiscountRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_discount(
    request: Request,
    discount_in: DiscountCreate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> DiscountRead:
    _ensure_unique(db, Discount, Discount.code, discount_in.code, "code")
    discount = Discount(**discount_in.model_dump())
    with transaction(db):
        db.add(discount)
    return _discount_read(_get_discount(db, discount.id))


@app.get("/discounts/{discount_id}", response_model=DiscountRead)
@limiter.limit("30/minute")
def get_discount(
    request: Request,
    discount_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> DiscountRead:
    return _discount_read(_get_discount(db, discount_id))


@app.put("/discounts/{discount_id}", response_model=DiscountRead)
@limiter.limit("15/minute")
def update_discount(
    request: Request,
    discount_id: int,
    discount_update: DiscountUpdate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> DiscountRead:
    discount = _get_discount(db, discount_id)
    changes = {k: v for k, v in discount_update.model_dump(exclude_unset=True).items() if v is not None}
    merged = {
        "code": discount.code,
        "type": discount.type,
        "value": discount.value,
        "start_date": discount.start_date,
        "end_date": discount.end_date,
        **changes,
    }
    try:
        DiscountBase.model_validate(merged)
    except ValidationError as exc:
        raise RequestValidationFailed(
            [field_error(("body", *error["loc"]), error["msg"], error["type"]) for error in exc.errors()]
        ) from exc
    if "code" in changes:
        _ensure_unique(db, Discount, Discount.code, changes["code"], "code", exclude_id=discount.id)

    with transaction(db):
        for key, value in changes.items():
            setattr(discount, key, value)
    service_list_cache.clear()
    return _discount_read(_get_discount(db, discount_id))


@app.delete("/discounts/{discount_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_discount(
    request: Request,
    discount_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Response:
    discount = _get_discount(db, discount_id)
    with transaction(db):
        db.delete(discount)
    service_list_cache.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
