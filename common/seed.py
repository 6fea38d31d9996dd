"""Reference data every deployment needs."""
from sqlalchemy.orm import Session

from .database import transaction
from .models import Role, RoleEnum

ROLE_DESCRIPTIONS = {
    RoleEnum.ADMIN: "Manages the catalog, users and booking lifecycle",
    RoleEnum.EMPLOYEE: "Delivers services and views bookings",
    RoleEnum.CUSTOMER: "Books services",
}


def seed_roles(db: Session) -> None:
    """Create any missing role rows; existing rows are left untouched."""

    existing = {role.name for role in db.query(Role).all()}
    with transaction(db):
        for name, description in ROLE_DESCRIPTIONS.items():
            if name not in existing:
                db.add(Role(name=name, description=description))


def get_role(db: Session, name: RoleEnum) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if role is None:
        seed_roles(db)
        role = db.query(Role).filter(Role.name == name).one()
    return role
