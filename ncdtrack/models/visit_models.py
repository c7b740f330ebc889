"""NCDTrack — Site Visit Counter Model."""

from datetime import datetime
from typing import Optional
from sqlalchemy import BigInteger
from sqlmodel import SQLModel, Field


class SiteVisit(SQLModel, table=True):
    """Single-row counter of dashboard visits."""

    __tablename__ = "site_visits"

    id: Optional[int] = Field(default=None, primary_key=True)
    count: int = Field(default=0, sa_type=BigInteger)
    last_visit: Optional[datetime] = Field(default=None)
