# backend/propchat/models/user.py

from sqlalchemy import Boolean, Column, Integer, String, Enum
from .base import BaseModel
import enum


class UserType(str, enum.Enum):
    """Marketplace roles relevant to messaging."""

    BUYER = "buyer"
    SELLER = "seller"


class User(BaseModel):
    """Read-only mirror of the marketplace user directory."""

    __tablename__ = "users"

    id           = Column(Integer, primary_key=True, index=True)
    email        = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    user_type    = Column(Enum(UserType), nullable=False, default=UserType.BUYER)
    avatar_url   = Column(String, nullable=True)
    is_active    = Column(Boolean, default=True, nullable=False)
