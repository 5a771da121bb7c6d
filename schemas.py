from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class UserUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=1, max_length=128)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    budget_cents: int


class BudgetUpdateIn(BaseModel):
    category_id: int
    budget_cents: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    budget_cents: int


class ExpenseIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    occurred_at: Optional[datetime] = None


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    occurred_at: Optional[datetime] = None


class ExpenseOut(BaseModel):
    id: int
    category_id: int
    category: str
    budget_cents: int
    amount_cents: int
    description: Optional[str]
    occurred_at: datetime
    created_at: datetime
    updated_at: datetime
