"""
Accounts and access control

Customers register and log in for an opaque bearer token. Every route that
needs a caller goes through ``get_current_user``; role and ownership rules are
expressed once here (``require_roles`` and ``ensure_owner``).
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from fastapi import Depends, Header

import config
from database import create_document, get_db, object_id, paginate, to_dict, utcnow
from errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError, UnauthorizedError
from schemas import RegisterRequest, Role, StaffCreateRequest, StaffUpdateRequest, User

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000
STAFF_ROLES = (Role.ADMIN.value, Role.STAFF.value)


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, expected = stored.split("$")
    except (AttributeError, ValueError):
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def public_user(user: dict) -> dict:
    out = to_dict(user)
    out.pop("password_hash", None)
    out.pop("token_hash", None)
    return out


def _create_user(db, payload: RegisterRequest, role: Role) -> dict:
    email = payload.email.strip().lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already registered")
    user = User(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
        role=role,
    )
    new_id = create_document(db, "user", user)
    return db["user"].find_one({"_id": object_id(new_id)})


def register(db, payload: RegisterRequest) -> dict:
    return public_user(_create_user(db, payload, Role.CUSTOMER))


def login(db, email: str, password: str):
    """Return (token, user). A fresh token replaces the previous one."""
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise UnauthorizedError("Invalid email or password")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is deactivated")
    token = secrets.token_urlsafe(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"token_hash": _token_hash(token), "last_login": utcnow(), "updated_at": utcnow()}},
    )
    return token, public_user(user)


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError()
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise UnauthorizedError()
    user = db["user"].find_one({"token_hash": _token_hash(token)})
    if not user:
        raise UnauthorizedError("Invalid token")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is deactivated")
    return public_user(user)


def require_roles(*roles: str):
    """Dependency factory: the current user must hold one of ``roles``."""
    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise ForbiddenError(f"Role '{user.get('role')}' is not authorized to access this route")
        return user
    return dependency


def is_staff(user: dict) -> bool:
    return user.get("role") in STAFF_ROLES


def ensure_owner(order: dict, user: dict, allow_staff: bool = True) -> None:
    if order["customer_id"] == user["id"]:
        return
    if allow_staff and is_staff(user):
        return
    raise ForbiddenError("You do not have permission to access this order")


# Staff management

def list_staff(db, page: int, limit: int):
    staff, pagination = paginate(db, "user", {"role": {"$in": list(STAFF_ROLES)}}, page, limit)
    for member in staff:
        member.pop("password_hash", None)
        member.pop("token_hash", None)
    return staff, pagination


def create_staff(db, payload: StaffCreateRequest) -> dict:
    if payload.role not in STAFF_ROLES:
        raise InvalidInputError("Invalid role. Must be 'admin' or 'staff'")
    return public_user(_create_user(db, payload, Role(payload.role)))


def update_staff(db, staff_id: str, payload: StaffUpdateRequest) -> dict:
    member = db["user"].find_one({"_id": object_id(staff_id, "Staff member")})
    if not member or member.get("role") not in STAFF_ROLES:
        raise NotFoundError("Staff member not found")
    if payload.role is not None and payload.role not in STAFF_ROLES:
        raise InvalidInputError("Invalid role")

    updates = payload.model_dump(exclude_none=True)
    losing_admin = member.get("role") == Role.ADMIN.value and member.get("is_active", True) and (
        updates.get("is_active") is False
        or ("role" in updates and updates["role"] != Role.ADMIN.value)
    )
    if losing_admin:
        active_admins = db["user"].count_documents({"role": Role.ADMIN.value, "is_active": True})
        if active_admins <= 1:
            raise ConflictError("Cannot deactivate the last admin")
    if updates.get("is_active") is False:
        updates["token_hash"] = None

    if updates:
        updates["updated_at"] = utcnow()
        db["user"].update_one({"_id": member["_id"]}, {"$set": updates})
    return public_user(db["user"].find_one({"_id": member["_id"]}))


def ensure_bootstrap_admin(db) -> None:
    if not (config.ADMIN_EMAIL and config.ADMIN_PASSWORD):
        return
    if db["user"].find_one({"role": Role.ADMIN.value}):
        return
    payload = RegisterRequest(
        first_name="Store", last_name="Admin", email=config.ADMIN_EMAIL, password=config.ADMIN_PASSWORD,
    )
    _create_user(db, payload, Role.ADMIN)
    logger.info("Created bootstrap admin %s", config.ADMIN_EMAIL)
