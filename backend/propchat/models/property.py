from sqlalchemy import Column, ForeignKey, Integer, String

from .base import BaseModel


class Property(BaseModel):
    """Read-only mirror of the listing catalog (only what chat needs)."""

    __tablename__ = "properties"

    id       = Column(String, primary_key=True)
    title    = Column(String, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
