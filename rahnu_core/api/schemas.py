"""
Pydantic schemas for API requests

Money, weight and percentages travel as decimal strings and are parsed with
Decimal on the server, never through float.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, Optional

from pydantic import AfterValidator, BaseModel, Field

from ..currency import decimal_from_string
from ..loans import ItemType
from ..savings import PaymentMethod


def _check_decimal(value: str) -> str:
    decimal_from_string(value)
    return value


DecimalStr = Annotated[str, AfterValidator(_check_decimal)]


# Gold price schemas
class SetGoldPriceRequest(BaseModel):
    karat: str = Field(..., description="Purity grade, e.g. 999 or 916")
    buy_price_per_gram: DecimalStr = Field(..., description="Decimal amount as string")
    sell_price_per_gram: DecimalStr = Field(..., description="Decimal amount as string")
    margin_percentage: Optional[DecimalStr] = None
    effective_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    source: Optional[str] = None


# Valuation schemas
class ValuationRequest(BaseModel):
    karat: str
    weight_grams: DecimalStr = Field(..., description="Decimal grams as string")
    margin_percent: Optional[DecimalStr] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    branch_id: Optional[str] = Field(None, description="Defaults to the caller's branch")
    item_description: str
    item_type: ItemType
    karat: str
    weight_grams: DecimalStr = Field(..., description="Decimal grams as string")
    margin_percent: Optional[DecimalStr] = None
    loan_amount: Optional[DecimalStr] = Field(None, description="Requested principal as string")
    loan_period_months: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


# Vault schemas
class VaultInRequest(BaseModel):
    loan_id: str
    barcode: Optional[str] = None
    location: str = Field(..., description="Physical location label, e.g. Vault A-1")
    approver1_id: str
    approver2_id: str
    signature1: Optional[str] = Field(None, description="Opaque signature artifact")
    signature2: Optional[str] = Field(None, description="Opaque signature artifact")


class VaultOutRequest(BaseModel):
    loan_id: str
    approver1_id: str
    approver2_id: str
    signature1: Optional[str] = None
    signature2: Optional[str] = None


# Gold savings schemas
class OpenAccountRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="Account owner, defaults to the caller")


class BuyGoldRequest(BaseModel):
    account_id: str
    karat: str
    weight_grams: DecimalStr = Field(..., description="Decimal grams as string")
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None


class SellGoldRequest(BaseModel):
    account_id: str
    karat: str
    weight_grams: DecimalStr = Field(..., description="Decimal grams as string")


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Envelope shared by every successful response"""
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body
