from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, date

from savingsplan.app.models.models import GoalStatus


class GoalCreate(BaseModel):
    name: str
    target_amount: float = Field(ge=0)
    currency: str = Field(min_length=2, max_length=10)
    deadline: date

class GoalUpdate(BaseModel):
    name: Optional[str] = None
    target_amount: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=2, max_length=10)
    deadline: Optional[date] = None

class GoalResponse(BaseModel):
    id: str
    name: str
    target_amount: float
    currency: str
    deadline: date
    status: GoalStatus
    created_at: datetime

    class Config:
        from_attributes = True
