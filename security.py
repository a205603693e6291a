"""
Password hashing, JWT issuing and role guards.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from database import create_document
from schemas import Actor, Admin
import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# Credential stores are tried in this order; the collection name is the role.
LOGIN_ORDER = ["user", "agency", "volunteer", "admin"]


class Token(BaseModel):
    access_token: str
    token_type: str
    role: Optional[str] = None


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def issue_token(actor: Actor) -> Token:
    token = create_access_token({"sub": actor.id, "role": actor.role})
    return Token(access_token=token, token_type="bearer", role=actor.role)


def authenticate(database, email: str, password: str) -> Optional[Actor]:
    """Resolve a login against each credential store in LOGIN_ORDER.

    The first store holding the email decides; a wrong password there fails
    the login rather than falling through to the next role.
    """
    for role in LOGIN_ORDER:
        doc = database[role].find_one({"email": email})
        if doc is None:
            continue
        if verify_password(password, doc.get("password_hash", "")):
            return Actor(id=str(doc["_id"]), role=role)
        return None
    return None


def email_taken(database, email: str) -> bool:
    return any(database[role].find_one({"email": email}) for role in LOGIN_ORDER)


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        role = payload.get("role")
        if user_id is None or role not in LOGIN_ORDER:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    return Actor(id=user_id, role=role)


def require_role(required: List[str]):
    def wrapper(actor: Actor = Depends(get_current_actor)):
        if actor.role not in required:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor
    return wrapper


def bootstrap_admin(database, email: Optional[str], password: Optional[str]) -> Optional[str]:
    if not email or not password:
        return None
    existing = database["admin"].find_one({"email": email})
    if existing:
        return str(existing["_id"])
    admin = Admin(name="Administrator", email=email, password_hash=get_password_hash(password))
    admin_id = create_document("admin", admin, database=database)
    logger.info("Bootstrap administrator %s created", email)
    return admin_id
