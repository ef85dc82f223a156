"""
Vault Custody Module

Dual-approval custody of pledged gold. An item enters the vault (VaultIn) and
leaves it (VaultOut) only with two distinct staff approvers and both of their
signatures. One custody record exists per loan, stored under the loan id, and
records are never deleted once committed.

Mutual exclusion per loan comes from the storage primitives: VaultIn is an
insert-if-absent on the loan key and VaultOut a compare-and-set on
status == in_vault, so of any concurrent racers exactly one wins.

Every custody change is followed by its audit entry. When the audit entry
cannot be written the custody change is undone before the error is raised.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import uuid

from .access import Caller
from .async_storage import AsyncStorageInterface, bounded_call, bounded_write
from .audit import AuditTrail, AuditEventType, AuditModule
from .exceptions import (
    AlreadyVaultedError, AuditWriteError, DuplicateApproverError, DuplicateBarcodeError,
    MissingSignatureError, NotInVaultError, StorageTimeoutError, StorageUnavailableError
)
from .loans import LoanManager
from .logging_config import log_action
from .storage import StorageRecord


logger = logging.getLogger("rahnu.vault")


class VaultStatus(Enum):
    """Custody states"""
    IN_VAULT = "in_vault"
    RELEASED = "released"
    MISSING = "missing"      # Administrative override
    DAMAGED = "damaged"      # Administrative override


@dataclass(frozen=True)
class ApprovalEvidence:
    """Two-person sign-off for one custody transition"""
    approver1_id: str
    approver2_id: str
    signature1: str          # Opaque signature artifact, e.g. base64 image
    signature2: str
    approved_at: datetime    # Server clock

    def to_dict(self, prefix: str) -> Dict[str, Any]:
        return {
            f'{prefix}_approver1_id': self.approver1_id,
            f'{prefix}_approver2_id': self.approver2_id,
            f'{prefix}_signature1': self.signature1,
            f'{prefix}_signature2': self.signature2,
            f'{prefix}_at': self.approved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], prefix: str) -> Optional['ApprovalEvidence']:
        if not data.get(f'{prefix}_at'):
            return None
        return cls(
            approver1_id=data[f'{prefix}_approver1_id'],
            approver2_id=data[f'{prefix}_approver2_id'],
            signature1=data[f'{prefix}_signature1'],
            signature2=data[f'{prefix}_signature2'],
            approved_at=datetime.fromisoformat(data[f'{prefix}_at']),
        )


EMPTY_EXIT = {
    'exit_approver1_id': None,
    'exit_approver2_id': None,
    'exit_signature1': None,
    'exit_signature2': None,
    'exit_at': None,
}


@dataclass
class VaultItem(StorageRecord):
    """
    Custody record for the collateral behind one loan

    Description, karat and weight are copied from the loan when the item is
    vaulted; later loan edits do not reach this record.
    """
    loan_id: str
    branch_id: str
    location: str
    item_description: str
    karat: str
    weight_grams: Decimal
    entry: ApprovalEvidence
    status: VaultStatus = VaultStatus.IN_VAULT
    barcode: Optional[str] = None
    exit: Optional[ApprovalEvidence] = None

    @property
    def is_in_vault(self) -> bool:
        return self.status == VaultStatus.IN_VAULT

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'branch_id': self.branch_id,
            'location': self.location,
            'item_description': self.item_description,
            'karat': self.karat,
            'weight_grams': str(self.weight_grams),
            'status': self.status.value,
            'barcode': self.barcode,
        }
        result.update(self.entry.to_dict('entry'))
        result.update(self.exit.to_dict('exit') if self.exit else EMPTY_EXIT)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VaultItem':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            branch_id=data['branch_id'],
            location=data['location'],
            item_description=data['item_description'],
            karat=data['karat'],
            weight_grams=Decimal(data['weight_grams']),
            entry=ApprovalEvidence.from_dict(data, 'entry'),
            status=VaultStatus(data['status']),
            barcode=data.get('barcode'),
            exit=ApprovalEvidence.from_dict(data, 'exit'),
        )


class VaultCustodyProtocol:
    """
    VaultIn / VaultOut state machine

    Callers must have passed the access guard; the protocol itself only
    enforces the dual-approval rules and the custody state machine.
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        timeout_seconds: Optional[float] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.timeout_seconds = timeout_seconds

        self.items_table = "vault_items"
        self.barcodes_table = "vault_barcodes"

    async def _call(self, coro):
        return await bounded_call(coro, self.timeout_seconds)

    async def _write(self, write, *args):
        # A timed-out write is either never applied or awaited to completion
        return await bounded_write(write, *args, timeout_seconds=self.timeout_seconds)

    @staticmethod
    def _check_approval(approver1_id: str, approver2_id: str,
                        signature1: Optional[str], signature2: Optional[str]) -> None:
        if approver1_id == approver2_id:
            raise DuplicateApproverError()
        if not signature1 or not signature2:
            raise MissingSignatureError()

    async def vault_in(
        self,
        loan_id: str,
        barcode: Optional[str],
        location: str,
        approver1_id: str,
        approver2_id: str,
        signature1: Optional[str],
        signature2: Optional[str],
        caller: Optional[Caller] = None
    ) -> VaultItem:
        """
        Secure the collateral of a loan in the vault

        Checks run in a fixed order and the first failure wins: the loan
        exists, the loan has no custody record yet, the approvers differ, both
        signatures are present, the barcode is not taken.

        Raises:
            LoanNotFoundError, AlreadyVaultedError, DuplicateApproverError,
            MissingSignatureError, DuplicateBarcodeError, StorageUnavailableError
        """
        loan = await self.loan_manager.get_loan(loan_id)

        if await self._call(self.storage.exists(self.items_table, loan_id)):
            raise AlreadyVaultedError()

        self._check_approval(approver1_id, approver2_id, signature1, signature2)

        item_id = str(uuid.uuid4())
        barcode = barcode or None
        if barcode is not None:
            try:
                claimed = await self._write(
                    self.storage.insert, self.barcodes_table, barcode,
                    {'loan_id': loan_id, 'item_id': item_id}
                )
            except StorageTimeoutError:
                raise
            except StorageUnavailableError:
                await self._release_barcode(barcode, item_id, loan_id)
                raise
            if not claimed:
                holder = await self._call(self.storage.load(self.barcodes_table, barcode))
                # A concurrent VaultIn for the same loan holds the claim
                if holder and holder.get('loan_id') == loan_id:
                    raise AlreadyVaultedError()
                if await self._call(self.storage.exists(self.items_table, loan_id)):
                    raise AlreadyVaultedError()
                raise DuplicateBarcodeError()

        now = datetime.now(timezone.utc)
        item = VaultItem(
            id=item_id,
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            branch_id=loan.branch_id,
            location=location,
            item_description=loan.item_description,
            karat=loan.karat,
            weight_grams=loan.weight_grams,
            entry=ApprovalEvidence(
                approver1_id=approver1_id,
                approver2_id=approver2_id,
                signature1=signature1,
                signature2=signature2,
                approved_at=now,
            ),
            barcode=barcode,
        )

        try:
            inserted = await self._write(
                self.storage.insert, self.items_table, loan_id, item.to_dict()
            )
        except StorageTimeoutError:
            # Abandoned before it was applied
            await self._release_barcode(barcode, item_id, loan_id)
            raise
        except StorageUnavailableError:
            # The insert may have committed before the failure was reported
            await self._undo_vault_in(item)
            raise
        if not inserted:
            # A concurrent VaultIn for this loan committed first
            await self._release_barcode(barcode, item_id, loan_id)
            raise AlreadyVaultedError()

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.VAULT_IN,
                module=AuditModule.RAHNU,
                entity_type="vault_item",
                entity_id=item.id,
                metadata={
                    "loan_id": loan_id,
                    "approver1_id": approver1_id,
                    "approver2_id": approver2_id,
                    "location": location,
                    "barcode": barcode,
                },
                user_id=caller.user_id if caller else None,
                branch_id=loan.branch_id,
            )
        except AuditWriteError as e:
            await self._undo_vault_in(item)
            raise StorageUnavailableError() from e

        log_action(
            logger, "info", f"Item for loan {loan_id} secured in vault at {location}",
            user_id=caller.user_id if caller else None,
            action="vault_in",
            resource=f"vault_item:{item.id}",
            extra={
                "loan_id": loan_id,
                "approver1_id": approver1_id,
                "approver2_id": approver2_id,
                "location": location,
            },
        )
        return item

    async def vault_out(
        self,
        loan_id: str,
        approver1_id: str,
        approver2_id: str,
        signature1: Optional[str],
        signature2: Optional[str],
        caller: Optional[Caller] = None
    ) -> VaultItem:
        """
        Release the collateral of a loan from the vault

        Checks run in a fixed order: an in_vault record exists, the approvers
        differ, both signatures are present. Entry evidence is left untouched.

        Raises:
            NotInVaultError, DuplicateApproverError, MissingSignatureError,
            StorageUnavailableError
        """
        current = await self._call(self.storage.load(self.items_table, loan_id))
        if not current or current.get('status') != VaultStatus.IN_VAULT.value:
            raise NotInVaultError()

        self._check_approval(approver1_id, approver2_id, signature1, signature2)

        now = datetime.now(timezone.utc)
        exit_evidence = ApprovalEvidence(
            approver1_id=approver1_id,
            approver2_id=approver2_id,
            signature1=signature1,
            signature2=signature2,
            approved_at=now,
        )
        changes = {
            'status': VaultStatus.RELEASED.value,
            'updated_at': now.isoformat(),
        }
        changes.update(exit_evidence.to_dict('exit'))

        try:
            updated = await self._write(
                self.storage.update_if, self.items_table, loan_id,
                {'status': VaultStatus.IN_VAULT.value}, changes
            )
        except StorageTimeoutError:
            # Abandoned before it was applied
            raise
        except StorageUnavailableError:
            # The release may have committed before the failure was reported
            await self._undo_vault_out(current, now)
            raise
        if updated is None:
            # Another VaultOut released the item first
            raise NotInVaultError()

        item = VaultItem.from_dict(updated)

        try:
            await self.audit_trail.record(
                event_type=AuditEventType.VAULT_OUT,
                module=AuditModule.RAHNU,
                entity_type="vault_item",
                entity_id=item.id,
                metadata={
                    "loan_id": loan_id,
                    "approver1_id": approver1_id,
                    "approver2_id": approver2_id,
                },
                user_id=caller.user_id if caller else None,
                branch_id=item.branch_id,
            )
        except AuditWriteError as e:
            await self._undo_vault_out(current, now)
            raise StorageUnavailableError() from e

        log_action(
            logger, "info", f"Item for loan {loan_id} released from vault",
            user_id=caller.user_id if caller else None,
            action="vault_out",
            resource=f"vault_item:{item.id}",
            extra={
                "loan_id": loan_id,
                "approver1_id": approver1_id,
                "approver2_id": approver2_id,
            },
        )
        return item

    async def get_item(self, loan_id: str) -> VaultItem:
        """
        Custody record for a loan, in any state

        Raises:
            NotInVaultError: If the loan was never vaulted
        """
        data = await self._call(self.storage.load(self.items_table, loan_id))
        if not data:
            raise NotInVaultError()
        return VaultItem.from_dict(data)

    async def list_items(
        self,
        branch_id: Optional[str] = None,
        status: Optional[VaultStatus] = None
    ) -> List[VaultItem]:
        """Custody records, newest first"""
        filters = {}
        if branch_id:
            filters['branch_id'] = branch_id
        if status:
            filters['status'] = VaultStatus(status).value
        rows = await self._call(self.storage.find(self.items_table, filters))
        items = [VaultItem.from_dict(row) for row in rows]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    async def _undo_vault_in(self, item: VaultItem) -> None:
        """
        Remove a custody record that has no entry audit

        The delete only matches the record this call inserted while it is still
        in the vault. A record a concurrent VaultOut has already released is
        kept, with its barcode claim, for manual reconciliation.
        """
        try:
            removed = await self._write(
                self.storage.delete_if, self.items_table, item.loan_id,
                {'id': item.id, 'status': VaultStatus.IN_VAULT.value}
            )
            if not removed:
                current = await self._call(self.storage.load(self.items_table, item.loan_id))
                if current and current.get('id') == item.id:
                    logger.error(
                        f"Custody record for loan {item.loan_id} moved to "
                        f"{current.get('status')} before its vault_in audit entry was "
                        f"written; needs manual reconciliation",
                        extra={'action': 'vault_in', 'resource': f"vault_item:{item.id}",
                               'extra': {'loan_id': item.loan_id}},
                    )
                    return
        except StorageUnavailableError as e:
            self._log_failed_compensation("vault_in", item.loan_id, e)
            return
        await self._release_barcode(item.barcode, item.id, item.loan_id)

    async def _undo_vault_out(self, previous: Dict[str, Any], released_at: datetime) -> None:
        """Put back in the vault a release made by this call, if it landed"""
        revert = {'status': VaultStatus.IN_VAULT.value, 'updated_at': previous['updated_at']}
        revert.update(EMPTY_EXIT)
        await self._compensate(
            "vault_out", previous['loan_id'],
            self._write(
                self.storage.update_if, self.items_table, previous['loan_id'],
                {'status': VaultStatus.RELEASED.value, 'exit_at': released_at.isoformat()},
                revert
            )
        )

    async def _release_barcode(self, barcode: Optional[str], item_id: str, loan_id: str) -> None:
        if barcode is not None:
            await self._compensate(
                "barcode_release", loan_id,
                self._write(
                    self.storage.delete_if, self.barcodes_table, barcode, {'item_id': item_id}
                )
            )

    async def _compensate(self, action: str, loan_id: str, coro) -> None:
        """Undo a committed write; a failed undo needs operator follow-up"""
        try:
            await coro
        except StorageUnavailableError as e:
            self._log_failed_compensation(action, loan_id, e)

    @staticmethod
    def _log_failed_compensation(action: str, loan_id: str, error: Exception) -> None:
        logger.error(
            f"Compensation for {action} on loan {loan_id} failed; "
            f"custody record needs manual reconciliation",
            exc_info=error,
            extra={'action': action, 'resource': f"vault_item:{loan_id}",
                   'extra': {'loan_id': loan_id, 'error': repr(error.__cause__ or error)}},
        )


def item_to_response(item: VaultItem) -> Dict[str, Any]:
    """Serialize a custody record for API responses"""

    def evidence(value: Optional[ApprovalEvidence]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        return {
            'approver1_id': value.approver1_id,
            'approver2_id': value.approver2_id,
            'signature1': value.signature1,
            'signature2': value.signature2,
            'approved_at': value.approved_at.isoformat(),
        }

    return {
        'id': item.id,
        'loan_id': item.loan_id,
        'branch_id': item.branch_id,
        'barcode': item.barcode,
        'location': item.location,
        'item_description': item.item_description,
        'karat': item.karat,
        'weight_grams': str(item.weight_grams),
        'status': item.status.value,
        'entry': evidence(item.entry),
        'exit': evidence(item.exit),
        'created_at': item.created_at.isoformat(),
        'updated_at': item.updated_at.isoformat(),
    }
