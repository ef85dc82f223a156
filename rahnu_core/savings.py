"""
Gold Savings Module (BSE)

Customers hold a gold balance in grams and trade against the shared gold price
book: a purchase is priced at the quote's buy price per gram and a sale at its
sell price per gram. Every trade is stored as a completed transaction and
audited under the bse module.

Balances move through a compare-and-set on the account's version, so
concurrent trades on one account serialize and a sale can never take the
balance below zero. A trade whose transaction record or audit entry cannot be
written is reversed by applying the opposite balance change.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import secrets
import uuid

from .async_storage import AsyncStorageInterface, bounded_call, bounded_write
from .audit import AuditTrail, AuditEventType, AuditModule
from .currency import DecimalLike, Money, Currency, to_decimal, round_currency, round_grams
from .exceptions import (
    AccountInactiveError, AccountNotFoundError, AuditWriteError, ConcurrentUpdateError,
    InsufficientGoldBalanceError, InvalidWeightError, RahnuError,
    StorageTimeoutError, StorageUnavailableError
)
from .gold_prices import GoldPriceBook, GoldPriceQuote
from .storage import StorageRecord


logger = logging.getLogger("rahnu.savings")

ZERO = Decimal('0')


class TransactionType(Enum):
    BUY = "buy"
    SELL = "sell"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentMethod(Enum):
    """How the customer pays for a purchase"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    EWALLET = "ewallet"


@dataclass
class GoldAccount(StorageRecord):
    """Gold savings account, balance held in grams"""
    user_id: str
    account_number: str
    balance_grams: Decimal = ZERO
    total_bought_grams: Decimal = ZERO
    total_sold_grams: Decimal = ZERO
    total_bought_value: Decimal = ZERO
    total_sold_value: Decimal = ZERO
    is_active: bool = True
    version: int = 0
    last_transaction_id: Optional[str] = None

    @property
    def average_buy_price(self) -> Optional[Decimal]:
        """Average price paid per gram over all purchases"""
        if self.total_bought_grams <= 0:
            return None
        return round_currency(self.total_bought_value / self.total_bought_grams)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GoldAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_number=data['account_number'],
            balance_grams=Decimal(data['balance_grams']),
            total_bought_grams=Decimal(data['total_bought_grams']),
            total_sold_grams=Decimal(data['total_sold_grams']),
            total_bought_value=Decimal(data['total_bought_value']),
            total_sold_value=Decimal(data['total_sold_value']),
            is_active=data.get('is_active', True),
            version=data.get('version', 0),
            last_transaction_id=data.get('last_transaction_id'),
        )


@dataclass
class GoldTransaction(StorageRecord):
    """One buy or sell against a savings account"""
    account_id: str
    user_id: str                  # Account owner
    transaction_number: str
    type: TransactionType
    karat: str
    weight_grams: Decimal
    price_per_gram: Decimal
    total_amount: Money
    status: TransactionStatus
    branch_id: Optional[str] = None
    quote_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    description: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['type'] = self.type.value
        result['status'] = self.status.value
        result['total_amount'] = str(self.total_amount.amount)
        result['currency'] = self.total_amount.currency.code
        result['payment_method'] = self.payment_method.value if self.payment_method else None
        result['processed_at'] = self.processed_at.isoformat() if self.processed_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GoldTransaction':
        method = data.get('payment_method')
        processed_at = data.get('processed_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            user_id=data['user_id'],
            transaction_number=data['transaction_number'],
            type=TransactionType(data['type']),
            karat=data['karat'],
            weight_grams=Decimal(data['weight_grams']),
            price_per_gram=Decimal(data['price_per_gram']),
            total_amount=Money(Decimal(data['total_amount']), Currency[data['currency']]),
            status=TransactionStatus(data['status']),
            branch_id=data.get('branch_id'),
            quote_id=data.get('quote_id'),
            payment_method=PaymentMethod(method) if method else None,
            payment_reference=data.get('payment_reference'),
            description=data.get('description'),
            processed_by=data.get('processed_by'),
            processed_at=datetime.fromisoformat(processed_at) if processed_at else None,
        )


def _timestamp_number(prefix: str, now: datetime) -> str:
    return f"{prefix}{int(now.timestamp() * 1000)}{secrets.randbelow(1000):03d}"


class GoldSavingsManager:
    """
    Opens gold savings accounts and settles buy and sell trades against them
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        price_book: GoldPriceBook,
        audit_trail: AuditTrail,
        currency: Currency = Currency.MYR,
        update_attempts: int = 5,
        timeout_seconds: Optional[float] = None
    ):
        self.storage = storage
        self.price_book = price_book
        self.audit_trail = audit_trail
        self.currency = currency
        self.update_attempts = max(1, update_attempts)
        self.timeout_seconds = timeout_seconds

        self.accounts_table = "bse_accounts"
        self.transactions_table = "bse_transactions"

    async def open_account(
        self,
        user_id: str,
        opened_by: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> GoldAccount:
        """Open an empty gold savings account for a user"""
        now = datetime.now(timezone.utc)
        account = GoldAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=_timestamp_number("BSE", now),
        )

        try:
            await self._write(self.storage.insert, self.accounts_table, account.id, account.to_dict())
        except StorageTimeoutError:
            raise
        except StorageUnavailableError:
            await self._discard(self.accounts_table, account.id, {'version': 0})
            raise

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.BSE_ACCOUNT_OPENED,
                module=AuditModule.BSE,
                entity_type="account",
                entity_id=account.id,
                metadata={"account_number": account.account_number, "user_id": user_id},
                user_id=opened_by or user_id,
                branch_id=branch_id,
            )
        except AuditWriteError as e:
            await self._discard(self.accounts_table, account.id, {'version': 0})
            raise StorageUnavailableError() from e

        logger.info(f"Opened gold savings account {account.account_number} for {user_id}")
        return account

    async def get_account(self, account_id: str) -> GoldAccount:
        """
        Raises:
            AccountNotFoundError: If no account has this id
        """
        data = await self._call(self.storage.load(self.accounts_table, account_id))
        if not data:
            raise AccountNotFoundError()
        return GoldAccount.from_dict(data)

    async def list_accounts(self, user_id: Optional[str] = None) -> List[GoldAccount]:
        filters = {'user_id': user_id} if user_id else {}
        rows = await self._call(self.storage.find(self.accounts_table, filters))
        accounts = [GoldAccount.from_dict(row) for row in rows]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts

    async def buy_gold(
        self,
        account_id: str,
        karat: str,
        weight_grams: DecimalLike,
        payment_method: PaymentMethod,
        payment_reference: Optional[str] = None,
        processed_by: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> GoldTransaction:
        """
        Credit grams to an account at the active buy price for the karat

        Raises:
            InvalidWeightError, AccountNotFoundError, AccountInactiveError,
            NoActivePriceError, StorageUnavailableError
        """
        weight = self._check_weight(weight_grams)
        payment_method = PaymentMethod(payment_method)
        account = await self._active_account(account_id)
        quote = await self.price_book.get_active_quote(karat)

        return await self._settle(
            account, TransactionType.BUY, quote, quote.buy_price_per_gram, weight,
            processed_by, branch_id,
            payment_method=payment_method,
            payment_reference=payment_reference,
        )

    async def sell_gold(
        self,
        account_id: str,
        karat: str,
        weight_grams: DecimalLike,
        processed_by: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> GoldTransaction:
        """
        Debit grams from an account at the active sell price for the karat

        Raises:
            InvalidWeightError, AccountNotFoundError, AccountInactiveError,
            InsufficientGoldBalanceError, NoActivePriceError, StorageUnavailableError
        """
        weight = self._check_weight(weight_grams)
        account = await self._active_account(account_id)
        if account.balance_grams < weight:
            raise InsufficientGoldBalanceError()
        quote = await self.price_book.get_active_quote(karat)

        return await self._settle(
            account, TransactionType.SELL, quote, quote.sell_price_per_gram, weight,
            processed_by, branch_id,
        )

    async def get_transaction(self, transaction_id: str) -> Optional[GoldTransaction]:
        data = await self._call(self.storage.load(self.transactions_table, transaction_id))
        return GoldTransaction.from_dict(data) if data else None

    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        account_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[GoldTransaction]:
        """Transactions, newest first"""
        filters = {}
        if user_id:
            filters['user_id'] = user_id
        if account_id:
            filters['account_id'] = account_id
        rows = await self._call(self.storage.find(self.transactions_table, filters))
        transactions = [GoldTransaction.from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            transactions = transactions[:limit]
        return transactions

    async def _settle(
        self,
        account: GoldAccount,
        txn_type: TransactionType,
        quote: GoldPriceQuote,
        price_per_gram: Decimal,
        weight: Decimal,
        processed_by: Optional[str],
        branch_id: Optional[str],
        payment_method: Optional[PaymentMethod] = None,
        payment_reference: Optional[str] = None
    ) -> GoldTransaction:
        now = datetime.now(timezone.utc)
        verb = "Bought" if txn_type == TransactionType.BUY else "Sold"
        txn = GoldTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account.id,
            user_id=account.user_id,
            transaction_number=_timestamp_number(f"BSE-{txn_type.value.upper()}-", now),
            type=txn_type,
            karat=quote.karat,
            weight_grams=weight,
            price_per_gram=price_per_gram,
            total_amount=Money(weight * price_per_gram, self.currency),
            status=TransactionStatus.COMPLETED,
            branch_id=branch_id,
            quote_id=quote.id,
            payment_method=payment_method,
            payment_reference=payment_reference,
            description=f"{verb} {weight}g of {quote.karat} karat gold",
            processed_by=processed_by,
            processed_at=now,
        )

        await self._change_balance(txn, sign=1)

        try:
            await self._write(self.storage.insert, self.transactions_table, txn.id, txn.to_dict())
        except StorageTimeoutError:
            await self._reverse(txn)
            raise
        except StorageUnavailableError:
            await self._discard(self.transactions_table, txn.id, {'id': txn.id})
            await self._reverse(txn)
            raise

        metadata = {
            "account_id": account.id,
            "transaction_number": txn.transaction_number,
            "karat": txn.karat,
            "weight_grams": weight,
            "price_per_gram": price_per_gram,
            "total_amount": txn.total_amount.amount,
        }
        if payment_method is not None:
            metadata["payment_method"] = payment_method

        try:
            await self.audit_trail.record(
                event_type=(
                    AuditEventType.BUY_GOLD if txn_type == TransactionType.BUY
                    else AuditEventType.SELL_GOLD
                ),
                module=AuditModule.BSE,
                entity_type="transaction",
                entity_id=txn.id,
                metadata=metadata,
                user_id=processed_by,
                branch_id=branch_id,
            )
        except AuditWriteError as e:
            await self._discard(self.transactions_table, txn.id, {'id': txn.id})
            await self._reverse(txn)
            raise StorageUnavailableError() from e

        logger.info(
            f"{txn.transaction_number}: {verb.lower()} {weight}g of {txn.karat} "
            f"for {txn.total_amount.to_string()} on account {account.account_number}"
        )
        return txn

    async def _change_balance(self, txn: GoldTransaction, sign: int) -> GoldAccount:
        """
        Apply a trade to its account, or take it back with sign=-1

        Each attempt is a compare-and-set on the version read just before it.
        The write tags the account with a change id so a write whose
        acknowledgement was lost can be recognized on reload.
        """
        change_id = txn.id if sign > 0 else f"{txn.id}:reversal"
        for _ in range(self.update_attempts):
            account = await self.get_account(txn.account_id)
            if sign > 0 and not account.is_active:
                raise AccountInactiveError()

            changes = self._balance_changes(account, txn, sign)
            if changes['balance_grams'] < 0:
                raise InsufficientGoldBalanceError()
            changes = {k: str(v) for k, v in changes.items()}
            changes.update({
                'version': account.version + 1,
                'last_transaction_id': change_id,
                'updated_at': datetime.now(timezone.utc).isoformat(),
            })

            try:
                updated = await self._write(
                    self.storage.update_if, self.accounts_table, account.id,
                    {'version': account.version}, changes
                )
            except StorageTimeoutError:
                raise
            except StorageUnavailableError:
                landed = await self._call(self.storage.load(self.accounts_table, account.id))
                if landed and landed.get('last_transaction_id') == change_id:
                    return GoldAccount.from_dict(landed)
                if landed is None or landed.get('version') != account.version:
                    logger.error(
                        f"Balance change {change_id} on account {account.id} could not be "
                        f"confirmed; account needs manual reconciliation"
                    )
                raise

            if updated is not None:
                return GoldAccount.from_dict(updated)

        raise ConcurrentUpdateError()

    @staticmethod
    def _balance_changes(account: GoldAccount, txn: GoldTransaction, sign: int) -> Dict[str, Decimal]:
        grams = txn.weight_grams * sign
        value = txn.total_amount.amount * sign
        if txn.type == TransactionType.BUY:
            return {
                'balance_grams': account.balance_grams + grams,
                'total_bought_grams': account.total_bought_grams + grams,
                'total_bought_value': account.total_bought_value + value,
            }
        return {
            'balance_grams': account.balance_grams - grams,
            'total_sold_grams': account.total_sold_grams + grams,
            'total_sold_value': account.total_sold_value + value,
        }

    async def _reverse(self, txn: GoldTransaction) -> None:
        try:
            await self._change_balance(txn, sign=-1)
        except RahnuError as e:
            logger.error(
                f"Reversal of {txn.transaction_number} on account {txn.account_id} failed; "
                f"account needs manual reconciliation: {e.__cause__ or e!r}"
            )

    async def _discard(self, table: str, record_id: str, expected: Dict[str, Any]) -> None:
        try:
            await self._write(self.storage.delete_if, table, record_id, expected)
        except StorageUnavailableError as e:
            logger.error(f"Could not remove {record_id} from {table}: {e.__cause__ or e!r}")

    async def _active_account(self, account_id: str) -> GoldAccount:
        account = await self.get_account(account_id)
        if not account.is_active:
            raise AccountInactiveError()
        return account

    @staticmethod
    def _check_weight(weight_grams: DecimalLike) -> Decimal:
        weight = round_grams(to_decimal(weight_grams))
        if weight <= 0:
            raise InvalidWeightError()
        return weight

    async def _call(self, coro):
        return await bounded_call(coro, self.timeout_seconds)

    async def _write(self, write, *args):
        return await bounded_write(write, *args, timeout_seconds=self.timeout_seconds)


def account_to_response(account: GoldAccount) -> Dict[str, Any]:
    """Serialize an account for API responses, grams and amounts as decimal strings"""
    average = account.average_buy_price
    return {
        'id': account.id,
        'user_id': account.user_id,
        'account_number': account.account_number,
        'balance_grams': str(round_grams(account.balance_grams)),
        'total_bought_grams': str(round_grams(account.total_bought_grams)),
        'total_sold_grams': str(round_grams(account.total_sold_grams)),
        'total_bought_value': str(round_currency(account.total_bought_value)),
        'total_sold_value': str(round_currency(account.total_sold_value)),
        'average_buy_price': str(average) if average is not None else None,
        'is_active': account.is_active,
        'created_at': account.created_at.isoformat(),
        'updated_at': account.updated_at.isoformat(),
    }


def transaction_to_response(txn: GoldTransaction) -> Dict[str, Any]:
    return {
        'id': txn.id,
        'account_id': txn.account_id,
        'user_id': txn.user_id,
        'branch_id': txn.branch_id,
        'transaction_number': txn.transaction_number,
        'type': txn.type.value,
        'karat': txn.karat,
        'weight_grams': str(txn.weight_grams),
        'price_per_gram': str(txn.price_per_gram),
        'total_amount': str(txn.total_amount.amount),
        'currency': txn.total_amount.currency.code,
        'status': txn.status.value,
        'payment_method': txn.payment_method.value if txn.payment_method else None,
        'payment_reference': txn.payment_reference,
        'description': txn.description,
        'processed_by': txn.processed_by,
        'processed_at': txn.processed_at.isoformat() if txn.processed_at else None,
        'quote_id': txn.quote_id,
        'created_at': txn.created_at.isoformat(),
    }
