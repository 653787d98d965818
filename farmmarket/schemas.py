# farmmarket/schemas.py
from typing import Optional

from pydantic import BaseModel, EmailStr, field_validator, Field

from .models import Role


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    # bcrypt only reads the first 72 bytes
    password: str = Field(min_length=8, max_length=72)
    confirm_password: str
    name: str = Field(min_length=1)
    role: Role
    phone: Optional[str] = None
    address: Optional[str] = None
    profile_image: Optional[str] = None

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v, info):
        if v != info.data.get("password"):
            raise ValueError("Passwords do not match")
        return v


class UserOut(BaseModel):
    id: int
    username: str
    email: EmailStr
    name: str
    role: Role
    phone: Optional[str] = None
    address: Optional[str] = None
    profile_image: Optional[str] = None

    class Config:
        from_attributes = True


class UserLogin(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut
