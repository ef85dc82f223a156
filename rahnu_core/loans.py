"""
Pawn Loan Module

Handles Ar-Rahnu loan origination: valuing the pledged gold, deriving the
principal from the margin, the monthly ujrah (safekeeping fee) and the maturity
date. Repayment, renewal and auction live outside this module.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import calendar
import logging
import secrets
import uuid

from .async_storage import AsyncStorageInterface, bounded_call, bounded_write
from .audit import AuditTrail, AuditEventType, AuditModule
from .config import RahnuConfig
from .currency import (
    DecimalLike, Money, Currency, to_decimal, round_grams, round_percent
)
from .exceptions import (
    AuditWriteError, InvalidMarginError, LoanNotFoundError,
    StorageTimeoutError, StorageUnavailableError
)
from .storage import StorageRecord
from .valuation import ValuationCalculator, compute_loan_principal, loan_to_value_ratio


logger = logging.getLogger("rahnu.loans")


class ItemType(Enum):
    """Kind of gold item pledged"""
    JEWELRY = "jewelry"
    GOLD_BAR = "gold_bar"
    GOLD_COIN = "gold_coin"
    OTHER = "other"


class LoanStatus(Enum):
    """Pawn loan lifecycle states"""
    ACTIVE = "active"          # Collateral pledged, loan outstanding
    REDEEMED = "redeemed"      # Customer repaid and collected the item
    RENEWED = "renewed"        # Rolled into a new loan
    DEFAULTED = "defaulted"    # Matured without redemption
    AUCTIONED = "auctioned"    # Collateral sold


@dataclass
class PawnLoan(StorageRecord):
    """Pawn loan contract secured by one gold item"""
    loan_number: str
    customer_id: str
    branch_id: str
    item_description: str
    item_type: ItemType
    karat: str
    weight_grams: Decimal
    gold_price_per_gram: Decimal
    market_value: Money
    loan_amount: Money
    loan_to_value_ratio: Decimal          # Percent of market value
    ujrah_percentage_monthly: Decimal     # e.g. 0.75 for 0.75% per month
    ujrah_amount: Money                   # Monthly fee
    loan_period_months: int
    start_date: datetime
    maturity_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    processed_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def total_ujrah(self) -> Money:
        """Fee over the full loan period"""
        return Money(self.ujrah_amount.amount * self.loan_period_months, self.ujrah_amount.currency)


def _add_months(start: datetime, months: int) -> datetime:
    """Add months to a timestamp, clamping the day to the target month's end"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _new_loan_number(now: datetime) -> str:
    return f"RL{int(now.timestamp() * 1000)}{secrets.randbelow(1000):03d}"


class LoanManager:
    """
    Originates pawn loans and serves them to the vault custody protocol
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        valuation_calculator: ValuationCalculator,
        audit_trail: AuditTrail,
        config: RahnuConfig,
        timeout_seconds: Optional[float] = None
    ):
        self.storage = storage
        self.valuation_calculator = valuation_calculator
        self.audit_trail = audit_trail
        self.timeout_seconds = timeout_seconds
        self.currency = Currency[config.currency]
        self.ujrah_percentage_monthly = to_decimal(config.ujrah_percentage_monthly)
        self.default_loan_period_months = config.default_loan_period_months

        self.loans_table = "rahnu_loans"

    async def originate_loan(
        self,
        customer_id: str,
        branch_id: str,
        item_description: str,
        item_type: ItemType,
        karat: str,
        weight_grams: DecimalLike,
        margin_percent: Optional[DecimalLike] = None,
        loan_amount: Optional[DecimalLike] = None,
        loan_period_months: Optional[int] = None,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> PawnLoan:
        """
        Originate a new pawn loan

        Args:
            customer_id: Borrower customer ID
            branch_id: Branch holding the collateral
            item_description: Free-text description of the pledged item
            item_type: Kind of gold item
            karat: Purity grade, priced from the active quote
            weight_grams: Gold weight, must be > 0
            margin_percent: Margin used to derive the principal (configured default if None)
            loan_amount: Requested principal; its loan-to-value ratio must fall in the
                configured margin bounds. Takes precedence over margin_percent.
            loan_period_months: Loan period (configured default if None)
            processed_by: Staff user originating the loan

        Returns:
            Created PawnLoan

        Raises:
            InvalidWeightError, InvalidMarginError, NoActivePriceError, StorageUnavailableError
        """
        item_type = ItemType(item_type)
        period = loan_period_months or self.default_loan_period_months
        if period < 1:
            raise InvalidMarginError("Loan period must be at least one month")

        appraisal = await self.valuation_calculator.appraise(karat, weight_grams, margin_percent)
        market_value = appraisal.market_value

        if loan_amount is not None:
            principal = to_decimal(loan_amount)
            ltv = loan_to_value_ratio(principal, market_value)
            self.valuation_calculator.check_margin(ltv)
        else:
            principal = compute_loan_principal(
                market_value, appraisal.margin_percent,
                self.valuation_calculator.min_margin, self.valuation_calculator.max_margin
            )
            ltv = appraisal.margin_percent

        ujrah = principal * self.ujrah_percentage_monthly / Decimal('100')

        now = datetime.now(timezone.utc)
        loan = PawnLoan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=_new_loan_number(now),
            customer_id=customer_id,
            branch_id=branch_id,
            item_description=item_description,
            item_type=item_type,
            karat=karat,
            weight_grams=round_grams(appraisal.weight_grams),
            gold_price_per_gram=appraisal.quote.buy_price_per_gram,
            market_value=Money(market_value, self.currency),
            loan_amount=Money(principal, self.currency),
            loan_to_value_ratio=round_percent(ltv),
            ujrah_percentage_monthly=self.ujrah_percentage_monthly,
            ujrah_amount=Money(ujrah, self.currency),
            loan_period_months=period,
            start_date=now,
            maturity_date=_add_months(now, period),
            status=LoanStatus.ACTIVE,
            processed_by=processed_by,
            notes=notes,
        )

        try:
            await bounded_write(
                self.storage.insert, self.loans_table, loan.id, self._loan_to_dict(loan),
                timeout_seconds=self.timeout_seconds
            )
        except StorageTimeoutError:
            raise
        except StorageUnavailableError:
            # The insert may have landed
            await self._remove_loan(loan.id)
            raise

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.LOAN_CREATED,
                module=AuditModule.RAHNU,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "customer_id": customer_id,
                    "karat": karat,
                    "weight_grams": loan.weight_grams,
                    "market_value": loan.market_value.amount,
                    "loan_amount": loan.loan_amount.amount,
                    "ujrah_amount": loan.ujrah_amount.amount,
                    "maturity_date": loan.maturity_date,
                },
                user_id=processed_by,
                branch_id=branch_id,
            )
        except AuditWriteError as e:
            await self._remove_loan(loan.id)
            raise StorageUnavailableError() from e

        logger.info(
            f"Originated loan {loan.loan_number} for {loan.loan_amount.to_string()} "
            f"against {loan.weight_grams}g of {karat}"
        )
        return loan

    async def get_loan(self, loan_id: str) -> PawnLoan:
        """
        Raises:
            LoanNotFoundError: If no loan has this id
        """
        data = await bounded_call(self.storage.load(self.loans_table, loan_id), self.timeout_seconds)
        if not data:
            raise LoanNotFoundError()
        return self._loan_from_dict(data)

    async def list_loans(self, branch_id: Optional[str] = None) -> List[PawnLoan]:
        """Loans, newest first, optionally restricted to one branch"""
        filters = {'branch_id': branch_id} if branch_id else {}
        rows = await bounded_call(self.storage.find(self.loans_table, filters), self.timeout_seconds)
        loans = [self._loan_from_dict(row) for row in rows]
        loans.sort(key=lambda loan: loan.start_date, reverse=True)
        return loans

    async def _remove_loan(self, loan_id: str) -> None:
        try:
            await bounded_write(
                self.storage.delete_if, self.loans_table, loan_id, {'id': loan_id},
                timeout_seconds=self.timeout_seconds
            )
        except StorageUnavailableError as e:
            logger.error(f"Could not remove unaudited loan {loan_id}: {e.__cause__ or e!r}")

    def _loan_to_dict(self, loan: PawnLoan) -> Dict[str, Any]:
        """Convert loan to dictionary"""
        result = loan.to_dict()
        result['item_type'] = loan.item_type.value
        result['status'] = loan.status.value
        for field in ['market_value', 'loan_amount', 'ujrah_amount']:
            amount = getattr(loan, field)
            result[field] = str(amount.amount)
            result['currency'] = amount.currency.code
        result['start_date'] = loan.start_date.isoformat()
        result['maturity_date'] = loan.maturity_date.isoformat()
        return result

    def _loan_from_dict(self, data: Dict[str, Any]) -> PawnLoan:
        """Convert dictionary to loan"""
        currency = Currency[data.get('currency', self.currency.code)]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return PawnLoan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            branch_id=data['branch_id'],
            item_description=data['item_description'],
            item_type=ItemType(data['item_type']),
            karat=data['karat'],
            weight_grams=Decimal(data['weight_grams']),
            gold_price_per_gram=Decimal(data['gold_price_per_gram']),
            market_value=get_money('market_value'),
            loan_amount=get_money('loan_amount'),
            loan_to_value_ratio=Decimal(data['loan_to_value_ratio']),
            ujrah_percentage_monthly=Decimal(data['ujrah_percentage_monthly']),
            ujrah_amount=get_money('ujrah_amount'),
            loan_period_months=data['loan_period_months'],
            start_date=datetime.fromisoformat(data['start_date']),
            maturity_date=datetime.fromisoformat(data['maturity_date']),
            status=LoanStatus(data['status']),
            processed_by=data.get('processed_by'),
            notes=data.get('notes'),
        )


def loan_to_response(loan: PawnLoan) -> Dict[str, Any]:
    """Serialize a loan for API responses, amounts as decimal strings"""
    return {
        'id': loan.id,
        'loan_number': loan.loan_number,
        'customer_id': loan.customer_id,
        'branch_id': loan.branch_id,
        'item_description': loan.item_description,
        'item_type': loan.item_type.value,
        'karat': loan.karat,
        'weight_grams': str(loan.weight_grams),
        'gold_price_per_gram': str(loan.gold_price_per_gram),
        'market_value': str(loan.market_value.amount),
        'loan_amount': str(loan.loan_amount.amount),
        'currency': loan.loan_amount.currency.code,
        'loan_to_value_ratio': str(loan.loan_to_value_ratio),
        'ujrah_percentage_monthly': str(loan.ujrah_percentage_monthly),
        'ujrah_amount': str(loan.ujrah_amount.amount),
        'loan_period_months': loan.loan_period_months,
        'start_date': loan.start_date.isoformat(),
        'maturity_date': loan.maturity_date.isoformat(),
        'status': loan.status.value,
        'processed_by': loan.processed_by,
        'notes': loan.notes,
        'created_at': loan.created_at.isoformat(),
    }
