"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..loans import ApprovedLoan, LoanRecord, due_status
from ..money import Currency, Money
from ..stokvela import StokvelaMember, PayoutStatus
from ..storage import serialize_value
from ..users import UserAccount


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("ZAR", description="Currency code")
    display: str = Field(..., description="Formatted amount, e.g. R1250.00")

    @classmethod
    def from_amount(cls, amount: Decimal) -> 'MoneyModel':
        money = Money(amount, Currency.ZAR)
        return cls(amount=str(money.amount), currency=money.currency.code, display=money.to_string())


# Auth schemas
class SignUpRequest(BaseModel):
    email: str
    password: str
    full_names: str
    gender: Optional[str] = None
    cellphone: Optional[str] = None
    date_of_birth: Optional[date] = None


class ConfirmEmailRequest(BaseModel):
    token: str


class SignInRequest(BaseModel):
    email: str
    password: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


# User schemas
class AddUserRequest(BaseModel):
    email: str
    full_names: str
    role: int = Field(3, description="1 Admin, 2 Editor, 3 User")
    gender: Optional[str] = None
    cellphone: Optional[str] = None
    date_of_birth: Optional[date] = None
    home_address: Optional[str] = None
    confirmed: bool = False


class UpdateProfileRequest(BaseModel):
    full_names: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    cellphone: Optional[str] = None
    home_address: Optional[str] = None


class SetRoleRequest(BaseModel):
    role: int


class SetConfirmedRequest(BaseModel):
    confirmed: bool


# Response builders

def loan_response(record: LoanRecord, today: Optional[date] = None) -> Dict[str, Any]:
    """Serialize a loan record of any state for the API"""
    data = record.to_dict()
    data['state'] = record.state.value
    data['amount'] = MoneyModel.from_amount(record.amount).model_dump()
    if isinstance(record, ApprovedLoan):
        data['total_return'] = MoneyModel.from_amount(record.total_return).model_dump()
        status = due_status(record, today)
        data['due_status'] = {
            'days_remaining': status.days_remaining,
            'overdue': status.overdue,
            'description': status.describe()
        }
    return data


def user_response(account: UserAccount) -> Dict[str, Any]:
    data = account.to_dict()
    data['role_label'] = account.role.label
    return data


def member_response(member: StokvelaMember, status: PayoutStatus) -> Dict[str, Any]:
    data = member.to_dict()
    data['amount_paid'] = MoneyModel.from_amount(member.amount_paid).model_dump()
    data['amount_to_receive'] = MoneyModel.from_amount(member.amount_to_receive).model_dump()
    data['status'] = status.value
    return data


def plain(value: Any) -> Any:
    """Decimal-safe JSON payload (amounts stay strings)"""
    return serialize_value(value)
