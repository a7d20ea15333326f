# auth.py

from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Cookie
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from booking_attendance.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from booking_attendance.database import database
from booking_attendance.models import users

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# auto_error off so the cookie can stand in for the header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

ROLES = ("learner", "tutor", "admin")


# Pydantic Models
class User(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "learner"

class Token(BaseModel):
    access_token: str
    token_type: str

# Self-service registration; admins are only seeded
class UserCreate(BaseModel):
    username: str
    full_name: str
    email: EmailStr
    password: str
    role: str = "learner"

async def get_user(username: str):
    query = users.select().where(users.c.username == username)
    return await database.fetch_one(query)

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

async def create_user(user: UserCreate) -> int:
    hashed_password = pwd_context.hash(user.password)
    query = users.insert().values(
        username=user.username,
        full_name=user.full_name,
        email=user.email,
        hashed_password=hashed_password,
        role=user.role
    )
    return await database.execute(query)


async def decode_token_and_get_user(token: Optional[str]) -> User:
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await get_user(username=username)
    if user is None:
        raise credentials_exception

    return User(
        id=user["id"],
        username=user["username"],
        email=user["email"],
        full_name=user["full_name"],
        role=user["role"],
    )


# Bearer header for API clients, access_token cookie for the browser
async def get_current_active_user(token: Optional[str] = Depends(oauth2_scheme),
                                  access_token: Optional[str] = Cookie(None)) -> User:
    return await decode_token_and_get_user(token or access_token)

async def get_current_admin(current_user: User = Depends(get_current_active_user)) -> User:
    if current_user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return current_user
