"""Company ledger with idempotent credits keyed on a unique reference."""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relaycore.exceptions import DuplicateReferenceError
from relaycore.models import CompanyAccount, LedgerEntry, utcnow

logger = logging.getLogger(__name__)


class LedgerService:
    """Store-backed implementation of the balance mutator."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balance(self, company_id: str) -> Decimal:
        result = await self.db.execute(
            select(CompanyAccount.balance).where(CompanyAccount.company_id == company_id)
        )
        balance = result.scalar_one_or_none()
        return Decimal(balance) if balance is not None else Decimal("0.00")

    async def credit(
        self,
        company_id: str,
        amount: Decimal,
        reference: str,
        provider: str = "manual",
        kind: str = "deposit",
    ) -> Decimal:
        """Credit ``amount`` to the company and return the new balance.

        The entry insert and the balance increment commit together. A
        reference that was already credited rolls back and raises
        ``DuplicateReferenceError``; the balance is left untouched.
        """
        try:
            self.db.add(LedgerEntry(
                company_id=company_id,
                amount=amount,
                reference=reference,
                provider=provider,
                kind=kind,
            ))
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateReferenceError(reference)

        await self.db.execute(self._balance_upsert(company_id, amount))
        await self.db.commit()

        new_balance = await self.get_balance(company_id)
        logger.info(f"Ledger credit {reference}: company={company_id} amount={amount} balance={new_balance}")
        return new_balance

    def _balance_upsert(self, company_id: str, amount: Decimal):
        """Open the account on first credit, otherwise add to the stored balance in one statement."""
        dialect = self.db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(CompanyAccount).values(company_id=company_id, balance=amount)
        return stmt.on_conflict_do_update(
            index_elements=[CompanyAccount.company_id],
            set_={
                "balance": CompanyAccount.balance + stmt.excluded.balance,
                "updated_at": utcnow(),
            },
        )
