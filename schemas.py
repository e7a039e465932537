from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=100)
    password_hash: str = Field(..., min_length=1, max_length=255)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class CategoryRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType


class TransactionIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: date
    type: TransactionType
    category_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: date
    category_id: Optional[int] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    description: Optional[str]
    date: date
    type: TransactionType
    category_id: Optional[int]
    category_name: Optional[str]


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., ge=Decimal("0.01"), max_digits=12, decimal_places=2)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000)
    category_id: int


class BudgetUpdate(BaseModel):
    amount: Decimal = Field(..., ge=Decimal("0.01"), max_digits=12, decimal_places=2)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    month: int
    year: int
    category_id: int
    category_name: str
    category_type: TransactionType
