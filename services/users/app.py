from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func
from sqlalchemy.orm import Session

from common import auth
from common.config import get_settings
from common.database import Base, SessionLocal, engine, get_db, transaction
from common.dependencies import allow_roles, get_current_active_user, get_optional_user, has_any_role
from common.errors import ForbiddenError, NotFoundError, RequestValidationFailed, field_error, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Role, RoleEnum, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    AuthResponse,
    EmployeeRegister,
    RoleCreate,
    RoleDetail,
    RoleRead,
    RoleUpdate,
    RoleUserSummary,
    UserRead,
    UserRegister,
)
from common.seed import get_role, seed_roles

settings = get_settings()

admin_only = allow_roles(RoleEnum.ADMIN)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            seed_roles(db)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app, include_in_schema=False)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


def _admin_exists(db: Session) -> bool:
    return db.query(User).join(Role).filter(Role.name == RoleEnum.ADMIN).first() is not None


def _auth_payload(user: User, message: str) -> AuthResponse:
    token, expires_at = auth.issue_user_token(user)
    return AuthResponse(
        message=message,
        user=UserRead.model_validate(user),
        access_token=token,
        expires_at=expires_at,
    )


def _store_user(db: Session, data: UserRegister, role: Role) -> AuthResponse:
    if db.query(User).filter(User.email == data.email).first():
        raise RequestValidationFailed([field_error(("body", "email"), "The email has already been taken.", "unique")])
    user = User(
        name=data.name,
        email=data.email,
        phone=data.phone,
        address=data.address,
        hashed_password=auth.get_password_hash(data.password),
        role_id=role.id,
    )
    with transaction(db):
        db.add(user)
    db.refresh(user)
    return _auth_payload(user, "User registered successfully")


@app.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_customer(request: Request, user_in: UserRegister, db: Session = Depends(get_db)) -> AuthResponse:
    return _store_user(db, user_in, get_role(db, RoleEnum.CUSTOMER))


@app.post("/register/employee", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_employee(
    request: Request,
    user_in: EmployeeRegister,
    current_user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> AuthResponse:
    # Until the first admin exists anyone may register staff, which is how that admin gets created.
    if _admin_exists(db) and (current_user is None or not has_any_role(current_user, {RoleEnum.ADMIN})):
        raise ForbiddenError("Only admins can register staff accounts")
    role = db.get(Role, user_in.role_id)
    if role is None:
        raise RequestValidationFailed(
            [field_error(("body", "role_id"), "The selected role id is invalid.", "missing_reference")]
        )
    return _store_user(db, user_in, role)


@app.post("/login", response_model=AuthResponse)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> AuthResponse:
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="The provided credentials are incorrect.")
    return _auth_payload(user, "Login successful")


@app.get("/me", response_model=UserRead)
@limiter.limit("60/minute")
def read_me(request: Request, current_user: User = Depends(get_current_active_user)) -> User:
    return current_user


# Roles


def _get_role(db: Session, role_id: int) -> Role:
    role = db.get(Role, role_id)
    if not role:
        raise NotFoundError("Role not found.")
    return role


@app.get("/roles", response_model=List[RoleRead])
@limiter.limit("30/minute")
def list_roles(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> List[RoleRead]:
    rows = (
        db.query(Role, func.count(User.id))
        .outerjoin(User, User.role_id == Role.id)
        .group_by(Role.id)
        .order_by(Role.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return [
        RoleRead(id=role.id, name=role.name, description=role.description, users_count=count) for role, count in rows
    ]


@app.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_role(
    request: Request,
    role_in: RoleCreate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Role:
    if db.query(Role).filter(Role.name == role_in.name).first():
        raise RequestValidationFailed([field_error(("body", "name"), "The name has already been taken.", "unique")])
    role = Role(name=role_in.name, description=role_in.description)
    with transaction(db):
        db.add(role)
    db.refresh(role)
    return role


@app.get("/roles/{role_id}", response_model=RoleDetail)
@limiter.limit("30/minute")
def get_role_detail(
    request: Request,
    role_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> RoleDetail:
    role = _get_role(db, role_id)
    return RoleDetail(
        id=role.id,
        name=role.name,
        description=role.description,
        users_count=len(role.users),
        users=[RoleUserSummary.model_validate(u) for u in role.users],
    )


@app.put("/roles/{role_id}", response_model=RoleRead)
@limiter.limit("15/minute")
def update_role(
    request: Request,
    role_id: int,
    role_update: RoleUpdate,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> RoleRead:
    role = _get_role(db, role_id)
    with transaction(db):
        for key, value in role_update.model_dump(exclude_unset=True).items():
            setattr(role, key, value)
    return RoleRead(id=role.id, name=role.name, description=role.description, users_count=len(role.users))


@app.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def delete_role(
    request: Request,
    role_id: int,
    _: User = Depends(admin_only),
    db: Session = Depends(get_db),
) -> Response:
    role = _get_role(db, role_id)
    if role.users:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot delete role assigned to users.")
    with transaction(db):
        db.delete(role)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
