import datetime as dt
import re
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType

CATEGORY_NAME_PATTERN = r"^[a-zA-Z0-9\s&]+$"
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"
USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, pattern=CATEGORY_NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=200)
    color: str = Field(default="#3B82F6", pattern=COLOR_PATTERN)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        # Length and pattern checks apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(
        default=None, min_length=1, max_length=50, pattern=CATEGORY_NAME_PATTERN
    )
    description: Optional[str] = Field(default=None, max_length=200)
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        # Length and pattern checks apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class TransactionIn(BaseModel):
    amount: Decimal = Field(..., ge=Decimal("0.01"), decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    type: TransactionType
    category_id: int = Field(..., ge=1)
    date: dt.date


class TransactionUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=Decimal("0.01"), decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = Field(default=None, ge=1)
    date: Optional[dt.date] = None


class RegisterIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3, max_length=255)
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    password: str = Field(..., min_length=6, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=50, alias="firstName")
    last_name: Optional[str] = Field(default=None, max_length=50, alias="lastName")

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        value = value.strip().lower()
        if not re.match(r"^[^\s@]+@[^\s@]+\.[^\s@]+$", value):
            raise ValueError("Please provide a valid email")
        return value

    @field_validator("password")
    @classmethod
    def _password_strength(cls, value: str) -> str:
        if not re.search(r"[a-z]", value) or not re.search(r"[A-Z]", value):
            raise ValueError(
                "Password must contain at least one uppercase and one lowercase letter"
            )
        if not re.search(r"\d", value):
            raise ValueError("Password must contain at least one number")
        return value


class LoginIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, max_length=50, alias="firstName")
    last_name: Optional[str] = Field(default=None, max_length=50, alias="lastName")
