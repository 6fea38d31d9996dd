#!/usr/bin/env python3
"""Create tables, seed roles and optionally an initial admin account.

Set ADMIN_EMAIL and ADMIN_PASSWORD to create the admin; DATABASE_URL picks the database.
"""
import os

from common.auth import get_password_hash
from common.database import Base, SessionLocal, engine, transaction
from common.models import RoleEnum, User
from common.seed import get_role, seed_roles


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_roles(db)
        print("Tables created and roles seeded.")

        email = os.getenv("ADMIN_EMAIL")
        password = os.getenv("ADMIN_PASSWORD")
        if not email or not password:
            return
        if db.query(User).filter(User.email == email).first():
            print(f"User {email} already exists, skipping admin creation.")
            return
        admin_role = get_role(db, RoleEnum.ADMIN)
        with transaction(db):
            db.add(
                User(
                    name=os.getenv("ADMIN_NAME", "Administrator"),
                    email=email,
                    phone=os.getenv("ADMIN_PHONE", ""),
                    hashed_password=get_password_hash(password),
                    role_id=admin_role.id,
                )
            )
        print(f"Admin {email} created.")


if __name__ == "__main__":
    init_db()
