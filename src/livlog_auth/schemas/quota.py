"""Pydantic schemas for the AI search quota routes."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UsageRead(BaseModel):
    policy: str
    count: int
    limit: int  # 0 = unlimited
    remaining: Optional[int] = None
    unlimited: bool
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
