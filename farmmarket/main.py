from datetime import datetime, timedelta, timezone
import logging
import os

import jwt
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from .dependencies import ALGORITHM, SECRET_KEY, get_current_user, get_storage
from .exceptions import ConflictError, NotFoundError
from .models import User
from .schemas import TokenResponse, UserCreate, UserLogin, UserOut
from .security import hash_password, verify_password
from .storage import Storage

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

app = APIRouter()

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "10080"))


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )

    to_encode.update({"exp": expire})

    token = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    return token


def token_for(user: User) -> str:
    return create_access_token(
        data={
            "sub": user.username,
            "user_id": user.id,
            "role": user.role.value,
        }
    )


def register(storage: Storage, user_in: UserCreate) -> User:
    if storage.get_user_by_username(user_in.username):
        raise ConflictError("Username already exists")
    if storage.get_user_by_email(user_in.email):
        raise ConflictError("Email already registered")

    try:
        with storage.transaction():
            user = storage.create_user(
                username=user_in.username,
                email=user_in.email,
                hashed_password=hash_password(user_in.password),
                name=user_in.name,
                role=user_in.role,
                phone=user_in.phone,
                address=user_in.address,
                profile_image=user_in.profile_image,
            )
    except IntegrityError:
        # lost a race with a concurrent registration
        raise ConflictError("Username or email already exists")

    logger.info(f"Registered {user.role.value} {user.username} (id {user.id})")
    return user


@app.post("/register", status_code=status.HTTP_201_CREATED)
def register_user(
    user_in: UserCreate,
    storage: Storage = Depends(get_storage),
):
    user = register(storage, user_in)
    return {
        "user": UserOut.model_validate(user),
        "access_token": token_for(user),
    }


@app.post("/login", response_model=TokenResponse)
def login_user(user_in: UserLogin, storage: Storage = Depends(get_storage)):
    user = storage.get_user_by_username(user_in.username)

    if not user or not verify_password(user_in.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    return TokenResponse(access_token=token_for(user), user=UserOut.model_validate(user))


@app.get("/me", response_model=UserOut)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@app.get("/{user_id}", response_model=UserOut)
def read_user(user_id: int, storage: Storage = Depends(get_storage)):
    user = storage.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user
