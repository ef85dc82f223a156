"""
Gold Price Book Module

Per-karat buy/sell quotes with effective and expiry dates. Valuation reads the
currently active quote for a karat; a karat without one cannot be valued.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import logging
import uuid

from .async_storage import AsyncStorageInterface, bounded_call, bounded_write
from .audit import AuditTrail, AuditEventType, AuditModule
from .currency import DecimalLike, to_decimal, round_currency, round_percent
from .exceptions import (
    AuditWriteError, GoldPriceNotFoundError, InvalidPriceError,
    NoActivePriceError, StorageTimeoutError, StorageUnavailableError
)
from .storage import StorageRecord


logger = logging.getLogger("rahnu.gold_prices")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class GoldPriceQuote(StorageRecord):
    """Price per gram for one purity grade"""
    karat: str                              # e.g. "999", "916"
    buy_price_per_gram: Decimal
    sell_price_per_gram: Decimal
    effective_date: datetime
    is_active: bool = True
    expiry_date: Optional[datetime] = None
    margin_percentage: Optional[Decimal] = None
    source: Optional[str] = None
    created_by: Optional[str] = None

    def is_effective(self, at: datetime) -> bool:
        """Active, already in effect and not yet expired at the given time"""
        if not self.is_active or self.effective_date > at:
            return False
        return self.expiry_date is None or self.expiry_date > at

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['buy_price_per_gram'] = str(self.buy_price_per_gram)
        result['sell_price_per_gram'] = str(self.sell_price_per_gram)
        result['effective_date'] = self.effective_date.isoformat()
        result['expiry_date'] = self.expiry_date.isoformat() if self.expiry_date else None
        result['margin_percentage'] = (
            str(self.margin_percentage) if self.margin_percentage is not None else None
        )
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GoldPriceQuote':
        margin = data.get('margin_percentage')
        expiry = data.get('expiry_date')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            karat=data['karat'],
            buy_price_per_gram=Decimal(data['buy_price_per_gram']),
            sell_price_per_gram=Decimal(data['sell_price_per_gram']),
            effective_date=datetime.fromisoformat(data['effective_date']),
            is_active=data.get('is_active', True),
            expiry_date=datetime.fromisoformat(expiry) if expiry else None,
            margin_percentage=Decimal(margin) if margin is not None else None,
            source=data.get('source'),
            created_by=data.get('created_by'),
        )


class GoldPriceBook:
    """Stores gold quotes and answers the active-quote lookup"""

    def __init__(
        self,
        storage: AsyncStorageInterface,
        audit_trail: AuditTrail,
        timeout_seconds: Optional[float] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.timeout_seconds = timeout_seconds
        self.prices_table = "gold_prices"

    async def set_quote(
        self,
        karat: str,
        buy_price_per_gram: DecimalLike,
        sell_price_per_gram: DecimalLike,
        effective_date: Optional[datetime] = None,
        expiry_date: Optional[datetime] = None,
        margin_percentage: Optional[DecimalLike] = None,
        source: Optional[str] = None,
        created_by: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> GoldPriceQuote:
        """
        Record a new quote for a karat

        Older quotes stay in the book; the lookup picks the newest effective one.
        """
        buy = to_decimal(buy_price_per_gram)
        sell = to_decimal(sell_price_per_gram)
        if buy <= 0 or sell <= 0:
            raise InvalidPriceError()

        now = datetime.now(timezone.utc)
        effective = _as_utc(effective_date) or now
        expiry_date = _as_utc(expiry_date)
        if expiry_date is not None and expiry_date <= effective:
            raise InvalidPriceError("Expiry date must be after the effective date")

        quote = GoldPriceQuote(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            karat=karat,
            buy_price_per_gram=round_currency(buy),
            sell_price_per_gram=round_currency(sell),
            effective_date=effective,
            expiry_date=expiry_date,
            margin_percentage=(
                round_percent(to_decimal(margin_percentage))
                if margin_percentage is not None else None
            ),
            source=source,
            created_by=created_by,
        )

        try:
            await self._write(self.storage.insert, self.prices_table, quote.id, quote.to_dict())
        except StorageTimeoutError:
            raise
        except StorageUnavailableError:
            # The insert may have landed
            await self._remove_quote(quote.id)
            raise

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.GOLD_PRICE_SET,
                module=AuditModule.BSE,
                entity_type="gold_price",
                entity_id=quote.id,
                metadata={
                    "karat": karat,
                    "buy_price_per_gram": quote.buy_price_per_gram,
                    "sell_price_per_gram": quote.sell_price_per_gram,
                    "effective_date": quote.effective_date,
                    "source": source,
                },
                user_id=created_by,
                branch_id=branch_id,
            )
        except AuditWriteError as e:
            await self._remove_quote(quote.id)
            raise StorageUnavailableError() from e

        logger.info(f"Gold price set for {karat}: buy {quote.buy_price_per_gram}/g")
        return quote

    async def get_quote(self, quote_id: str) -> GoldPriceQuote:
        data = await bounded_call(self.storage.load(self.prices_table, quote_id), self.timeout_seconds)
        if not data:
            raise GoldPriceNotFoundError()
        return GoldPriceQuote.from_dict(data)

    async def list_quotes(self, karat: Optional[str] = None) -> List[GoldPriceQuote]:
        """All quotes, newest effective date first"""
        filters = {'karat': karat} if karat else {}
        rows = await bounded_call(self.storage.find(self.prices_table, filters), self.timeout_seconds)
        quotes = [GoldPriceQuote.from_dict(row) for row in rows]
        quotes.sort(key=lambda q: q.effective_date, reverse=True)
        return quotes

    async def get_active_quote(self, karat: str, at: Optional[datetime] = None) -> GoldPriceQuote:
        """
        Newest quote for the karat that is active and in effect

        Raises:
            NoActivePriceError: If the karat has no quote in effect
        """
        at = _as_utc(at) or datetime.now(timezone.utc)
        candidates = [q for q in await self.list_quotes(karat) if q.is_effective(at)]
        if not candidates:
            raise NoActivePriceError(karat)
        return candidates[0]

    async def deactivate_quote(
        self,
        quote_id: str,
        user_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> GoldPriceQuote:
        """Withdraw a quote so it is no longer used for valuation"""
        deactivated_at = datetime.now(timezone.utc).isoformat()
        try:
            updated = await self._write(
                self.storage.update_if, self.prices_table, quote_id,
                {'is_active': True},
                {'is_active': False, 'updated_at': deactivated_at}
            )
        except StorageTimeoutError:
            raise
        except StorageUnavailableError:
            await self._reactivate_quote(quote_id, deactivated_at)
            raise
        if updated is None:
            # Missing, or already inactive
            return await self.get_quote(quote_id)

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.GOLD_PRICE_DEACTIVATED,
                module=AuditModule.BSE,
                entity_type="gold_price",
                entity_id=quote_id,
                metadata={"karat": updated['karat']},
                user_id=user_id,
                branch_id=branch_id,
            )
        except AuditWriteError as e:
            await self._reactivate_quote(quote_id, deactivated_at)
            raise StorageUnavailableError() from e

        return GoldPriceQuote.from_dict(updated)

    async def _write(self, write, *args):
        return await bounded_write(write, *args, timeout_seconds=self.timeout_seconds)

    async def _remove_quote(self, quote_id: str) -> None:
        try:
            await self._write(self.storage.delete_if, self.prices_table, quote_id, {'id': quote_id})
        except StorageUnavailableError as e:
            logger.error(f"Could not remove unaudited gold price {quote_id}: {e.__cause__ or e!r}")

    async def _reactivate_quote(self, quote_id: str, deactivated_at: str) -> None:
        """Undo a deactivation only if nothing has touched the quote since"""
        try:
            await self._write(
                self.storage.update_if, self.prices_table, quote_id,
                {'is_active': False, 'updated_at': deactivated_at},
                {'is_active': True}
            )
        except StorageUnavailableError as e:
            logger.error(f"Could not reactivate gold price {quote_id}: {e.__cause__ or e!r}")
