"""
Credit Compensation

Paid work is charged before it starts and refunded when it fails. The ledger
itself is external; JobCore only defines the interface it needs and the
spend/refund choreography around a processor's work.

Usage:
    compensator = CreditCompensator(ledger)

    async with compensator.charge(job, 30, 'Character images') as charge:
        outcomes = await generate_images(...)
        failed = [o for o in outcomes if not o.success]
        if failed:
            await charge.refund_partial(10 * len(failed), 'image generation failed')
        result = build_partial_result(outcomes)
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Union

from jobcore.db.models import Job
from jobcore.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CreditTransaction:
    """A ledger entry returned by spend and refund"""
    transaction_id: str
    user_id: str
    amount: int
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class CreditLedger(ABC):
    """Interface of the external credit ledger"""

    @abstractmethod
    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CreditTransaction:
        """Debit credits

        Raises:
            InsufficientCredits: The balance does not cover ``amount``
        """
        pass

    @abstractmethod
    async def refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CreditTransaction:
        """Credit back a previous spend"""
        pass


@dataclass
class ItemOutcome:
    """Outcome of one item of a batch job (one image, one shot)"""
    item_id: str
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'success': self.success,
            'result': self.result,
            'error': self.error,
        }


def build_partial_result(items: Iterable[Union[ItemOutcome, Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Result data for a batch job where some items may have failed.

    The job completes with per-item outcomes instead of failing as a whole.
    """
    records = [item.to_dict() if isinstance(item, ItemOutcome) else dict(item) for item in items]
    succeeded = sum(1 for record in records if record.get('success'))
    return {
        'items': records,
        'succeeded': succeeded,
        'failed': len(records) - succeeded,
        'total': len(records),
    }


def _check_amount(amount: int) -> None:
    if amount is None or amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")


class Charge:
    """Handle for one spend, used to refund part of it"""

    def __init__(self, ledger: CreditLedger, job: Job, transaction: CreditTransaction):
        self.ledger = ledger
        self.job = job
        self.transaction = transaction
        self.refunded = 0

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id

    def refund_metadata(self, reason: str) -> Dict[str, Any]:
        return {
            'jobId': self.job.id,
            'originalTransactionId': self.transaction_id,
            'reason': reason,
        }

    async def refund_partial(self, amount: int, reason: str) -> CreditTransaction:
        """Refund the cost of the items that failed

        Raises:
            ValueError: ``amount`` is not positive or exceeds what is left to refund
        """
        _check_amount(amount)
        remaining = self.transaction.amount - self.refunded
        if amount > remaining:
            raise ValueError(f"Cannot refund {amount} credits, only {remaining} left on {self.transaction_id}")

        refund = await self.ledger.refund(
            self.job.user_id,
            amount,
            f"Partial refund: {reason}",
            self.refund_metadata(reason)
        )
        self.refunded += amount
        logger.info(f"Refunded {amount} credits for job {self.job.id} ({reason})")
        return refund


class CreditCompensator:
    """Spends credits before paid work and refunds them if the work fails"""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    @asynccontextmanager
    async def charge(
        self,
        job: Job,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[Charge]:
        """
        Spend ``amount`` for ``job`` and refund what is left if the block raises.

        The original exception is re-raised after the refund so the caller
        fails the job. A failing refund is logged and does not replace it.

        Raises:
            ValueError: ``amount`` is not positive
            InsufficientCredits: The ledger rejected the spend (nothing to refund)
        """
        _check_amount(amount)
        spend_metadata = {'jobId': job.id, **(metadata or {})}
        transaction = await self.ledger.spend(job.user_id, amount, description, spend_metadata)
        logger.info(f"Spent {amount} credits for job {job.id} (transaction {transaction.transaction_id})")

        charge = Charge(self.ledger, job, transaction)
        try:
            yield charge
        except Exception as e:
            remaining = transaction.amount - charge.refunded
            if remaining > 0:
                await self._refund_after_failure(charge, remaining, str(e))
            raise

    async def _refund_after_failure(self, charge: Charge, amount: int, reason: str) -> None:
        try:
            await self.ledger.refund(
                charge.job.user_id,
                amount,
                f"Refund: {reason}",
                charge.refund_metadata(reason)
            )
            charge.refunded += amount
            logger.info(f"Refunded {amount} credits for failed job {charge.job.id}")
        except Exception as refund_error:
            logger.error(
                f"Refund of {amount} credits for job {charge.job.id} failed "
                f"(transaction {charge.transaction_id}): {refund_error}"
            )