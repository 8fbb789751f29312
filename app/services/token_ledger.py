"""
Token Ledger - atomic balance store with an append-only transaction log.

Every balance mutation is a single conditional UPDATE ... RETURNING executed
by the database, so concurrent callers serialize on the row and the balance
can never go negative. The transaction row is written in the same database
transaction as the balance change.

Outcomes are result values (ConsumeSuccess / InsufficientBalance /
GrantSuccess), never exceptions.
"""

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import TokenBalance, TokenTransaction, utc_now
from app.exceptions import DataIntegrityError
from app.models.api import ActionType, TransactionType
from app.models.domain import (
    ConsumeResult,
    ConsumeSuccess,
    GrantIntent,
    GrantSuccess,
    InsufficientBalance,
    LedgerReplay,
    TokenBalanceData,
    TokenTransactionData,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

# Every metered action costs one token
CONSUME_COST = 1

MAX_HISTORY_LIMIT = 200


class TokenLedger:
    """
    Token ledger bound to one database session.

    `consume` and `grant` commit. `apply_grant` does not, so callers can make
    a grant part of a larger unit of work (see PurchaseService).
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    async def get_balance(self, account_id: str) -> TokenBalanceData:
        """Current balance; an account without a row has an empty balance."""
        row = await self._find_balance(account_id)
        if row is None:
            return TokenBalanceData.empty(account_id)
        return self._balance_to_domain(row)

    async def consume(
        self,
        account_id: str,
        action_type: ActionType,
        reference_id: str | None = None,
    ) -> ConsumeResult:
        """
        Spend one token.

        The decrement is conditional on `balance >= cost` inside the UPDATE
        itself; if no row matches there is nothing to spend and nothing is
        written.
        """
        stmt = (
            update(TokenBalance)
            .where(
                TokenBalance.account_id == account_id,
                TokenBalance.balance >= CONSUME_COST,
            )
            .values(
                balance=TokenBalance.balance - CONSUME_COST,
                lifetime_spent=TokenBalance.lifetime_spent + CONSUME_COST,
                updated_at=utc_now(),
            )
            .returning(TokenBalance.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            await self.session.rollback()
            current = await self.get_balance(account_id)
            logger.info(
                "token_consume_insufficient",
                account_id=account_id,
                action_type=action_type.value,
                balance=current.balance,
            )
            metrics.record_consume(action_type.value, success=False)
            return InsufficientBalance(balance=current.balance)

        transaction = TokenTransaction(
            account_id=account_id,
            amount=-CONSUME_COST,
            transaction_type=TransactionType.CONSUME,
            action_type=action_type.value,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        self.session.add(transaction)
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "token_consumed",
            account_id=account_id,
            action_type=action_type.value,
            reference_id=reference_id,
            transaction_id=str(transaction.transaction_id),
            new_balance=new_balance,
        )
        metrics.record_consume(action_type.value, success=True)
        return ConsumeSuccess(
            transaction_id=transaction.transaction_id,
            new_balance=new_balance,
            action_type=action_type,
        )

    async def grant(self, intent: GrantIntent) -> GrantSuccess:
        """Add tokens and commit."""
        result = await self.apply_grant(intent)
        await self.session.commit()

        logger.info(
            "tokens_granted",
            account_id=intent.account_id,
            amount=intent.amount,
            grant_type=intent.grant_type.value,
            description=intent.description,
            transaction_id=str(result.transaction_id),
            new_balance=result.new_balance,
        )
        metrics.record_grant(intent.grant_type.value, intent.amount)
        return result

    async def apply_grant(self, intent: GrantIntent) -> GrantSuccess:
        """
        Add tokens inside the caller's transaction.

        Creates the balance row when the account has none. A concurrent
        creator wins the primary key; the loser falls back to the increment.
        """
        new_balance = await self._increment(intent.account_id, intent.amount)

        if new_balance is None:
            try:
                async with self.session.begin_nested():
                    self.session.add(
                        TokenBalance(
                            account_id=intent.account_id,
                            balance=intent.amount,
                            lifetime_earned=intent.amount,
                            lifetime_spent=0,
                        )
                    )
                new_balance = intent.amount
            except IntegrityError:
                logger.info("token_balance_created_concurrently", account_id=intent.account_id)
                new_balance = await self._increment(intent.account_id, intent.amount)
                if new_balance is None:
                    raise DataIntegrityError(
                        f"Balance row for {intent.account_id} vanished during grant"
                    )

        transaction = TokenTransaction(
            account_id=intent.account_id,
            amount=intent.amount,
            transaction_type=TransactionType.GRANT,
            action_type=intent.grant_type.value,
            reference_id=intent.reference_id,
            description=intent.description,
            balance_after=new_balance,
        )
        self.session.add(transaction)
        await self.session.flush()

        return GrantSuccess(transaction_id=transaction.transaction_id, new_balance=new_balance)

    async def get_history(self, account_id: str, limit: int = 50) -> list[TokenTransactionData]:
        """Most recent transactions first."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.account_id == account_id)
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._transaction_to_domain(tx) for tx in result.scalars().all()]

    async def replay(self, account_id: str) -> LedgerReplay:
        """Rebuild the balance from the log and compare it with the stored row."""
        stored = await self.get_balance(account_id)

        stmt = select(
            func.coalesce(func.sum(TokenTransaction.amount), 0),
            func.coalesce(
                func.sum(TokenTransaction.amount).filter(
                    TokenTransaction.transaction_type == TransactionType.GRANT
                ),
                0,
            ),
            func.coalesce(
                func.sum(-TokenTransaction.amount).filter(
                    TokenTransaction.transaction_type == TransactionType.CONSUME
                ),
                0,
            ),
            func.count(TokenTransaction.id),
        ).where(TokenTransaction.account_id == account_id)
        balance, earned, spent, count = (await self.session.execute(stmt)).one()

        replay = LedgerReplay(
            account_id=account_id,
            stored=stored,
            replayed_balance=int(balance),
            replayed_earned=int(earned),
            replayed_spent=int(spent),
            transaction_count=int(count),
        )
        if not replay.consistent:
            logger.error(
                "token_ledger_replay_mismatch",
                account_id=account_id,
                stored_balance=stored.balance,
                replayed_balance=replay.replayed_balance,
            )
        return replay

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _increment(self, account_id: str, amount: int) -> int | None:
        stmt = (
            update(TokenBalance)
            .where(TokenBalance.account_id == account_id)
            .values(
                balance=TokenBalance.balance + amount,
                lifetime_earned=TokenBalance.lifetime_earned + amount,
                updated_at=utc_now(),
            )
            .returning(TokenBalance.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_balance(self, account_id: str) -> TokenBalance | None:
        stmt = select(TokenBalance).where(TokenBalance.account_id == account_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _balance_to_domain(self, row: TokenBalance) -> TokenBalanceData:
        """Convert ORM balance to domain model."""
        return TokenBalanceData(
            account_id=row.account_id,
            balance=row.balance,
            lifetime_earned=row.lifetime_earned,
            lifetime_spent=row.lifetime_spent,
            updated_at=row.updated_at,
        )

    def _transaction_to_domain(self, tx: TokenTransaction) -> TokenTransactionData:
        """Convert ORM transaction to domain model."""
        return TokenTransactionData(
            transaction_id=tx.transaction_id,
            account_id=tx.account_id,
            amount=tx.amount,
            transaction_type=TransactionType(tx.transaction_type),
            action_type=tx.action_type,
            reference_id=tx.reference_id,
            balance_after=tx.balance_after,
            created_at=tx.created_at,
        )
