"""
Valuation Calculator Module

Turns gold weight, purity and margin into the amounts a pawn loan is originated
with. The two compute functions are pure and keep full Decimal precision;
rounding happens only when a Valuation is built for persistence or display.
"""

from decimal import Decimal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import RahnuConfig
from .currency import DecimalLike, to_decimal, round_currency, round_grams, round_percent
from .exceptions import InvalidMarginError, InvalidWeightError
from .gold_prices import GoldPriceBook, GoldPriceQuote


HUNDRED = Decimal('100')


def compute_market_value(weight_grams: DecimalLike, price_per_gram: DecimalLike) -> Decimal:
    """
    Market value of a gold item

    Raises:
        InvalidWeightError: If the weight is not greater than zero
    """
    weight = to_decimal(weight_grams)
    if weight <= 0:
        raise InvalidWeightError()
    return weight * to_decimal(price_per_gram)


def compute_loan_principal(
    market_value: DecimalLike,
    margin_percent: DecimalLike,
    min_margin: Decimal = Decimal('0'),
    max_margin: Decimal = HUNDRED
) -> Decimal:
    """
    Loan principal for a margin percentage of market value

    The margin must lie in (min_margin, max_margin].

    Raises:
        InvalidMarginError: If the margin is outside the allowed range
    """
    margin = to_decimal(margin_percent)
    if margin <= min_margin or margin > max_margin:
        raise InvalidMarginError(
            f"Margin percentage must be greater than {min_margin} and at most {max_margin}"
        )
    return to_decimal(market_value) * margin / HUNDRED


def loan_to_value_ratio(loan_amount: DecimalLike, market_value: DecimalLike) -> Decimal:
    """Loan amount as a percentage of market value"""
    value = to_decimal(market_value)
    if value <= 0:
        raise InvalidWeightError("Market value must be greater than zero")
    return to_decimal(loan_amount) / value * HUNDRED


@dataclass(frozen=True)
class Appraisal:
    """Unrounded valuation, kept at full precision for loan pricing"""
    quote: GoldPriceQuote
    weight_grams: Decimal
    margin_percent: Decimal
    market_value: Decimal
    principal: Decimal


@dataclass(frozen=True)
class Valuation:
    """Rounded valuation of one item against one quote"""
    karat: str
    weight_grams: Decimal
    price_per_gram: Decimal
    market_value: Decimal
    margin_percent: Decimal
    principal: Decimal
    quote_id: str
    valued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'karat': self.karat,
            'weight_grams': str(self.weight_grams),
            'price_per_gram': str(self.price_per_gram),
            'market_value': str(self.market_value),
            'margin_percent': str(self.margin_percent),
            'principal': str(self.principal),
            'quote_id': self.quote_id,
            'valued_at': self.valued_at.isoformat(),
        }


class ValuationCalculator:
    """Values items against the active gold quote using the configured margin bounds"""

    def __init__(self, price_book: GoldPriceBook, config: RahnuConfig):
        self.price_book = price_book
        self.min_margin = to_decimal(config.min_margin_percent)
        self.max_margin = to_decimal(config.max_margin_percent)
        self.default_margin = to_decimal(config.default_margin_percent)

    def check_margin(self, margin_percent: DecimalLike) -> Decimal:
        margin = to_decimal(margin_percent)
        if margin <= self.min_margin or margin > self.max_margin:
            raise InvalidMarginError(
                f"Margin percentage must be greater than {self.min_margin} "
                f"and at most {self.max_margin}"
            )
        return margin

    async def appraise(
        self,
        karat: str,
        weight_grams: DecimalLike,
        margin_percent: Optional[DecimalLike] = None,
        at: Optional[datetime] = None
    ) -> Appraisal:
        """
        Price an item at the active buy price for its karat, without rounding

        Raises:
            InvalidWeightError, InvalidMarginError, NoActivePriceError
        """
        weight = to_decimal(weight_grams)
        if weight <= 0:
            raise InvalidWeightError()
        margin = self.check_margin(
            margin_percent if margin_percent is not None else self.default_margin
        )

        quote = await self.price_book.get_active_quote(karat, at)
        market_value = compute_market_value(weight, quote.buy_price_per_gram)
        principal = compute_loan_principal(
            market_value, margin, self.min_margin, self.max_margin
        )

        return Appraisal(
            quote=quote,
            weight_grams=weight,
            margin_percent=margin,
            market_value=market_value,
            principal=principal,
        )

    async def value_item(
        self,
        karat: str,
        weight_grams: DecimalLike,
        margin_percent: Optional[DecimalLike] = None,
        at: Optional[datetime] = None
    ) -> Valuation:
        """Value an item at the active buy price for its karat, rounded for display"""
        appraisal = await self.appraise(karat, weight_grams, margin_percent, at)
        return Valuation(
            karat=karat,
            weight_grams=round_grams(appraisal.weight_grams),
            price_per_gram=round_currency(appraisal.quote.buy_price_per_gram),
            market_value=round_currency(appraisal.market_value),
            margin_percent=round_percent(appraisal.margin_percent),
            principal=round_currency(appraisal.principal),
            quote_id=appraisal.quote.id,
            valued_at=at or datetime.now(timezone.utc),
        )
