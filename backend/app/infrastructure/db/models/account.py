"""
Account Database Model

Purchaser profile. Created on the first completed checkout for an email
that has no account yet.
"""

from typing import Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class AccountModel(BaseModel, table=True):
    """Maps to the 'accounts' table."""

    __tablename__ = "accounts"

    email: str = Field(max_length=320, unique=True, index=True, nullable=False)
    full_name: Optional[str] = Field(default=None, max_length=200)
    relation_to_product: Optional[str] = Field(default=None, max_length=100)
