"""Datastore access for the matching engine.

``MatchingStore`` is the port the matching services depend on; ``SqlMatchingStore`` is the
SQLAlchemy implementation over Postgres + pgvector. Every method is tenant-scoped and opens
its own session, so concurrent coroutines never share a session.

Payment base-currency columns are optional in deployed schemas. Only the cross-currency
candidate lookup names them; every other payment read selects ``PAYMENT_COLUMNS``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine

from ledgermatch.db.session import create_sessionmaker
from ledgermatch.models.models import (
    InboxEmbedding,
    InboxItem,
    InboxStatus,
    MatchSuggestion,
    Payment,
    PaymentStatus,
    SuggestionStatus,
    TenantMatchCalibration,
    TransactionEmbedding,
    utcnow,
)
from ledgermatch.models.records import (
    CandidateQuery,
    FeedbackSummary,
    InboxRecord,
    PatternHistoryItem,
    PaymentRecord,
    SuggestionDraft,
    SuggestionRecord,
    TenantCalibration,
)
from ledgermatch.services.errors import SchemaMismatchError

logger = logging.getLogger(__name__)

FEEDBACK_STATUSES = (SuggestionStatus.confirmed, SuggestionStatus.declined, SuggestionStatus.unmatched)
DISMISSED_STATUSES = (SuggestionStatus.declined, SuggestionStatus.unmatched)
REVERSE_CANDIDATE_STATUSES = (InboxStatus.pending, InboxStatus.analyzing)

PAYMENT_COLUMNS = (
    Payment.id,
    Payment.tenant_id,
    Payment.name,
    Payment.description,
    Payment.merchant_name,
    Payment.amount,
    Payment.currency,
    Payment.payment_date,
)
BASE_CURRENCY_COLUMNS = (Payment.base_amount, Payment.base_currency)


class MatchingStore:
    async def get_inbox(self, *, tenant_id: int, inbox_id: int) -> InboxRecord | None:
        raise NotImplementedError

    async def get_payment(self, *, tenant_id: int, payment_id: int) -> PaymentRecord | None:
        raise NotImplementedError

    async def get_payment_embedding(self, *, tenant_id: int, payment_id: int) -> list[float] | None:
        raise NotImplementedError

    async def search_payments(self, *, tenant_id: int, query: CandidateQuery) -> list[PaymentRecord]:
        raise NotImplementedError

    async def list_recent_payments(self, *, tenant_id: int, date_from: date, date_to: date, limit: int) -> list[PaymentRecord]:
        raise NotImplementedError

    async def find_pending_inbox_candidates(
        self,
        *,
        tenant_id: int,
        embedding: list[float],
        date_from: date,
        date_to: date,
        max_distance: float,
        limit: int,
    ) -> list[InboxRecord]:
        raise NotImplementedError

    async def list_pending_inbox_ids(self, *, tenant_id: int, limit: int) -> list[int]:
        raise NotImplementedError

    async def was_previously_dismissed(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> bool:
        raise NotImplementedError

    async def upsert_suggestion(self, draft: SuggestionDraft) -> int:
        raise NotImplementedError

    async def get_suggestion(self, *, tenant_id: int, suggestion_id: int) -> SuggestionRecord | None:
        raise NotImplementedError

    async def get_suggestion_for_pair(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> SuggestionRecord | None:
        raise NotImplementedError

    async def set_suggestion_status(self, *, tenant_id: int, suggestion_id: int, status: SuggestionStatus) -> None:
        raise NotImplementedError

    async def update_inbox_status(self, *, tenant_id: int, inbox_id: int, status: InboxStatus) -> None:
        raise NotImplementedError

    async def link_inbox_transaction(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> bool:
        raise NotImplementedError

    async def unlink_inbox_transaction(self, *, tenant_id: int, inbox_id: int) -> None:
        raise NotImplementedError

    async def feedback_summary(self, *, tenant_id: int, since: datetime) -> FeedbackSummary:
        raise NotImplementedError

    async def find_merchant_patterns(
        self,
        *,
        tenant_id: int,
        inbox_embedding: list[float],
        transaction_embedding: list[float],
        since: datetime,
        max_distance: float,
        limit: int,
    ) -> list[PatternHistoryItem]:
        raise NotImplementedError

    async def get_calibration(self, *, tenant_id: int) -> TenantCalibration | None:
        raise NotImplementedError

    async def save_calibration(self, calibration: TenantCalibration) -> None:
        raise NotImplementedError

    async def delete_calibration(self, *, tenant_id: int) -> bool:
        raise NotImplementedError


def _vector(value: Any) -> list[float] | None:
    # pgvector hands back numpy arrays
    if value is None:
        return None
    return [float(x) for x in value]


def _num(value: Any) -> float | None:
    return float(value) if value is not None else None


def _inbox_record(item: InboxItem, embedding: Any = None) -> InboxRecord:
    return InboxRecord(
        id=item.id,
        tenant_id=item.tenant_id,
        display_name=item.display_name,
        website=item.website,
        description=item.description,
        amount=_num(item.amount),
        base_amount=_num(item.base_amount),
        currency=item.currency,
        base_currency=item.base_currency,
        date=item.document_date,
        type=item.type,
        status=item.status,
        transaction_id=item.transaction_id,
        embedding=_vector(embedding),
    )


def _payment_record(row: Mapping[str, Any]) -> PaymentRecord:
    return PaymentRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        description=row["description"],
        merchant_name=row["merchant_name"],
        amount=_num(row["amount"]),
        currency=row["currency"],
        base_amount=_num(row.get("base_amount")),
        base_currency=row.get("base_currency"),
        date=row["payment_date"],
        embedding=_vector(row.get("embedding")),
        embedding_distance=_num(row.get("embedding_distance")),
    )


def _missing_column(e: DBAPIError) -> bool:
    # Postgres reports an undefined column as ProgrammingError, sqlite as OperationalError
    if isinstance(e, ProgrammingError):
        return True
    return isinstance(e, OperationalError) and "no such column" in str(e.orig or e)


def _uses_base_currency(query: CandidateQuery) -> bool:
    return query.amount_field == "base_amount" or query.base_currency is not None


def _suggestion_record(s: MatchSuggestion) -> SuggestionRecord:
    return SuggestionRecord(
        id=s.id,
        tenant_id=s.tenant_id,
        inbox_id=s.inbox_id,
        transaction_id=s.transaction_id,
        confidence_score=s.confidence_score,
        match_type=s.match_type,
        status=s.status,
        match_details=dict(s.match_details or {}),
        created_at=s.created_at,
    )


def _calibration_record(row: TenantMatchCalibration) -> TenantCalibration:
    return TenantCalibration(
        tenant_id=row.tenant_id,
        calibrated_suggested_threshold=float(row.calibrated_suggested_threshold),
        calibrated_auto_threshold=float(row.calibrated_auto_threshold),
        calibrated_high_confidence_threshold=float(row.calibrated_high_confidence_threshold),
        total_suggestions=row.total_suggestions,
        confirmed_suggestions=row.confirmed_suggestions,
        declined_suggestions=row.declined_suggestions,
        unmatched_suggestions=row.unmatched_suggestions,
        suggested_match_accuracy=float(row.suggested_match_accuracy),
        avg_confidence_confirmed=_num(row.avg_confidence_confirmed),
        avg_confidence_declined=_num(row.avg_confidence_declined),
        avg_confidence_unmatched=_num(row.avg_confidence_unmatched),
        last_calibrated_at=row.last_calibrated_at,
    )


class SqlMatchingStore(MatchingStore):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = create_sessionmaker(engine)

    def _insert(self, table):
        if self._engine.dialect.name == "sqlite":
            return sqlite_insert(table)
        return pg_insert(table)

    # ---------------------------
    # Reads
    # ---------------------------

    async def get_inbox(self, *, tenant_id: int, inbox_id: int) -> InboxRecord | None:
        stmt = (
            select(InboxItem, InboxEmbedding.embedding)
            .outerjoin(InboxEmbedding, InboxEmbedding.inbox_id == InboxItem.id)
            .where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id))
            .limit(1)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return _inbox_record(row[0], row[1])

    async def get_payment(self, *, tenant_id: int, payment_id: int) -> PaymentRecord | None:
        stmt = (
            select(*PAYMENT_COLUMNS, TransactionEmbedding.embedding)
            .select_from(Payment)
            .outerjoin(TransactionEmbedding, TransactionEmbedding.payment_id == Payment.id)
            .where(and_(Payment.tenant_id == tenant_id, Payment.id == payment_id))
            .limit(1)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).mappings().first()
        if row is None:
            return None
        return _payment_record(row)

    async def get_payment_embedding(self, *, tenant_id: int, payment_id: int) -> list[float] | None:
        stmt = select(TransactionEmbedding.embedding).where(
            and_(TransactionEmbedding.tenant_id == tenant_id, TransactionEmbedding.payment_id == payment_id)
        )
        async with self._sessions() as session:
            value = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return _vector(value)

    def _payment_distance(self, embedding: list[float]):
        return TransactionEmbedding.embedding.cosine_distance(embedding)

    def _inbox_distance(self, embedding: list[float]):
        return InboxEmbedding.embedding.cosine_distance(embedding)

    def candidate_statement(self, tenant_id: int, query: CandidateQuery) -> Select:
        distance = self._payment_distance(query.embedding)
        columns = PAYMENT_COLUMNS
        amount_col = Payment.amount
        if _uses_base_currency(query):
            columns = PAYMENT_COLUMNS + BASE_CURRENCY_COLUMNS
            if query.amount_field == "base_amount":
                amount_col = Payment.base_amount

        stmt = (
            select(*columns, TransactionEmbedding.embedding, distance.label("embedding_distance"))
            .select_from(Payment)
            .join(
                TransactionEmbedding,
                TransactionEmbedding.payment_id == Payment.id,
                isouter=not query.require_embedding,
            )
            .where(
                and_(
                    Payment.tenant_id == tenant_id,
                    Payment.status == PaymentStatus.completed,
                    Payment.payment_date.between(query.date_from, query.date_to),
                )
            )
        )
        if query.min_amount is not None and query.max_amount is not None:
            stmt = stmt.where(func.abs(amount_col).between(query.min_amount, query.max_amount))
        if query.currency is not None:
            stmt = stmt.where(Payment.currency == query.currency)
        if query.exclude_currency is not None:
            stmt = stmt.where(Payment.currency != query.exclude_currency)
        if query.base_currency is not None:
            stmt = stmt.where(Payment.base_currency == query.base_currency)
        if query.require_embedding:
            stmt = stmt.where(distance < query.max_distance)
        else:
            stmt = stmt.where(or_(TransactionEmbedding.embedding.is_(None), distance < query.max_distance))
        return stmt.order_by(distance.asc().nulls_last()).limit(query.limit)

    async def search_payments(self, *, tenant_id: int, query: CandidateQuery) -> list[PaymentRecord]:
        stmt = self.candidate_statement(tenant_id, query)
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).mappings().all()
        except DBAPIError as e:
            if _uses_base_currency(query) and _missing_column(e):
                raise SchemaMismatchError(str(e.orig or e)) from e
            raise

        return [_payment_record(row) for row in rows]

    async def list_recent_payments(self, *, tenant_id: int, date_from: date, date_to: date, limit: int) -> list[PaymentRecord]:
        stmt = (
            select(*PAYMENT_COLUMNS)
            .where(
                and_(
                    Payment.tenant_id == tenant_id,
                    Payment.status == PaymentStatus.completed,
                    Payment.payment_date.between(date_from, date_to),
                )
            )
            .order_by(Payment.payment_date.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [_payment_record(row) for row in rows]

    def pending_inbox_statement(
        self,
        *,
        tenant_id: int,
        embedding: list[float],
        date_from: date,
        date_to: date,
        max_distance: float,
        limit: int,
    ) -> Select:
        distance = self._inbox_distance(embedding)
        return (
            select(InboxItem, InboxEmbedding.embedding)
            .join(InboxEmbedding, InboxEmbedding.inbox_id == InboxItem.id)
            .where(
                and_(
                    InboxItem.tenant_id == tenant_id,
                    InboxItem.status.in_(REVERSE_CANDIDATE_STATUSES),
                    InboxItem.transaction_id.is_(None),
                    InboxItem.document_date.between(date_from, date_to),
                    distance < max_distance,
                )
            )
            .order_by(distance.asc())
            .limit(limit)
        )

    async def find_pending_inbox_candidates(
        self,
        *,
        tenant_id: int,
        embedding: list[float],
        date_from: date,
        date_to: date,
        max_distance: float,
        limit: int,
    ) -> list[InboxRecord]:
        stmt = self.pending_inbox_statement(
            tenant_id=tenant_id,
            embedding=embedding,
            date_from=date_from,
            date_to=date_to,
            max_distance=max_distance,
            limit=limit,
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [_inbox_record(row[0], row[1]) for row in rows]

    async def list_pending_inbox_ids(self, *, tenant_id: int, limit: int) -> list[int]:
        stmt = (
            select(InboxItem.id)
            .where(
                and_(
                    InboxItem.tenant_id == tenant_id,
                    InboxItem.status == InboxStatus.pending,
                    InboxItem.transaction_id.is_(None),
                )
            )
            .order_by(InboxItem.created_at.desc(), InboxItem.id.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            return list(await session.scalars(stmt))

    async def was_previously_dismissed(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> bool:
        stmt = select(MatchSuggestion.id).where(
            and_(
                MatchSuggestion.tenant_id == tenant_id,
                MatchSuggestion.inbox_id == inbox_id,
                MatchSuggestion.transaction_id == transaction_id,
                MatchSuggestion.status.in_(DISMISSED_STATUSES),
            )
        )
        async with self._sessions() as session:
            found = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return found is not None

    async def get_suggestion(self, *, tenant_id: int, suggestion_id: int) -> SuggestionRecord | None:
        stmt = select(MatchSuggestion).where(and_(MatchSuggestion.tenant_id == tenant_id, MatchSuggestion.id == suggestion_id))
        async with self._sessions() as session:
            s = await session.scalar(stmt)
        return _suggestion_record(s) if s else None

    async def get_suggestion_for_pair(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> SuggestionRecord | None:
        stmt = select(MatchSuggestion).where(
            and_(
                MatchSuggestion.tenant_id == tenant_id,
                MatchSuggestion.inbox_id == inbox_id,
                MatchSuggestion.transaction_id == transaction_id,
            )
        )
        async with self._sessions() as session:
            s = await session.scalar(stmt)
        return _suggestion_record(s) if s else None

    async def feedback_summary(self, *, tenant_id: int, since: datetime) -> FeedbackSummary:
        status = MatchSuggestion.status
        score = MatchSuggestion.confidence_score
        stmt = select(
            func.count(MatchSuggestion.id).filter(status == SuggestionStatus.confirmed),
            func.count(MatchSuggestion.id).filter(status == SuggestionStatus.declined),
            func.count(MatchSuggestion.id).filter(status == SuggestionStatus.unmatched),
            func.avg(score).filter(status == SuggestionStatus.confirmed),
            func.avg(score).filter(status == SuggestionStatus.declined),
            func.avg(score).filter(status == SuggestionStatus.unmatched),
        ).where(
            and_(
                MatchSuggestion.tenant_id == tenant_id,
                status.in_(FEEDBACK_STATUSES),
                MatchSuggestion.created_at > since,
            )
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).one()

        return FeedbackSummary(
            confirmed=int(row[0] or 0),
            declined=int(row[1] or 0),
            unmatched=int(row[2] or 0),
            avg_confidence_confirmed=_num(row[3]),
            avg_confidence_declined=_num(row[4]),
            avg_confidence_unmatched=_num(row[5]),
        )

    def merchant_pattern_statement(
        self,
        *,
        tenant_id: int,
        inbox_embedding: list[float],
        transaction_embedding: list[float],
        since: datetime,
        max_distance: float,
        limit: int,
    ) -> Select:
        inbox_distance = self._inbox_distance(inbox_embedding)
        txn_distance = self._payment_distance(transaction_embedding)
        return (
            select(
                MatchSuggestion.id,
                MatchSuggestion.status,
                MatchSuggestion.confidence_score,
                (1 - inbox_distance).label("inbox_similarity"),
                (1 - txn_distance).label("transaction_similarity"),
                MatchSuggestion.created_at,
            )
            .select_from(MatchSuggestion)
            .join(InboxEmbedding, InboxEmbedding.inbox_id == MatchSuggestion.inbox_id)
            .join(TransactionEmbedding, TransactionEmbedding.payment_id == MatchSuggestion.transaction_id)
            .where(
                and_(
                    MatchSuggestion.tenant_id == tenant_id,
                    MatchSuggestion.status.in_(FEEDBACK_STATUSES),
                    MatchSuggestion.created_at > since,
                    inbox_distance < max_distance,
                    txn_distance < max_distance,
                )
            )
            .order_by(MatchSuggestion.created_at.desc())
            .limit(limit)
        )

    async def find_merchant_patterns(
        self,
        *,
        tenant_id: int,
        inbox_embedding: list[float],
        transaction_embedding: list[float],
        since: datetime,
        max_distance: float,
        limit: int,
    ) -> list[PatternHistoryItem]:
        stmt = self.merchant_pattern_statement(
            tenant_id=tenant_id,
            inbox_embedding=inbox_embedding,
            transaction_embedding=transaction_embedding,
            since=since,
            max_distance=max_distance,
            limit=limit,
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [
            PatternHistoryItem(
                suggestion_id=row[0],
                status=row[1],
                confidence_score=float(row[2]),
                inbox_similarity=float(row[3]),
                transaction_similarity=float(row[4]),
                created_at=row[5],
            )
            for row in rows
        ]

    async def get_calibration(self, *, tenant_id: int) -> TenantCalibration | None:
        stmt = select(TenantMatchCalibration).where(TenantMatchCalibration.tenant_id == tenant_id)
        async with self._sessions() as session:
            row = await session.scalar(stmt)
        return _calibration_record(row) if row else None

    # ---------------------------
    # Writes
    # ---------------------------

    async def upsert_suggestion(self, draft: SuggestionDraft) -> int:
        values = {
            "tenant_id": draft.tenant_id,
            "inbox_id": draft.inbox_id,
            "transaction_id": draft.transaction_id,
            "confidence_score": draft.confidence_score,
            "amount_score": draft.amount_score,
            "currency_score": draft.currency_score,
            "date_score": draft.date_score,
            "embedding_score": draft.embedding_score,
            "match_type": draft.match_type,
            "match_details": draft.match_details,
            "status": SuggestionStatus.pending,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        ins = self._insert(MatchSuggestion).values(**values)
        # last writer wins on the scores; feedback status is owned by the reviewer
        stmt = ins.on_conflict_do_update(
            index_elements=["tenant_id", "inbox_id", "transaction_id"],
            set_={
                "confidence_score": ins.excluded.confidence_score,
                "amount_score": ins.excluded.amount_score,
                "currency_score": ins.excluded.currency_score,
                "date_score": ins.excluded.date_score,
                "embedding_score": ins.excluded.embedding_score,
                "match_type": ins.excluded.match_type,
                "match_details": ins.excluded.match_details,
                "updated_at": ins.excluded.updated_at,
            },
        )
        lookup = select(MatchSuggestion.id).where(
            and_(
                MatchSuggestion.tenant_id == draft.tenant_id,
                MatchSuggestion.inbox_id == draft.inbox_id,
                MatchSuggestion.transaction_id == draft.transaction_id,
            )
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)
            return (await session.execute(lookup)).scalar_one()

    async def set_suggestion_status(self, *, tenant_id: int, suggestion_id: int, status: SuggestionStatus) -> None:
        stmt = (
            update(MatchSuggestion)
            .where(and_(MatchSuggestion.tenant_id == tenant_id, MatchSuggestion.id == suggestion_id))
            .values(status=status, user_action_at=utcnow(), updated_at=utcnow())
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)

    async def update_inbox_status(self, *, tenant_id: int, inbox_id: int, status: InboxStatus) -> None:
        # linked items are only released through unlink_inbox_transaction
        stmt = (
            update(InboxItem)
            .where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id, InboxItem.transaction_id.is_(None)))
            .values(status=status, updated_at=utcnow())
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)

    async def link_inbox_transaction(self, *, tenant_id: int, inbox_id: int, transaction_id: int) -> bool:
        stmt = (
            update(InboxItem)
            .where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id, InboxItem.transaction_id.is_(None)))
            .values(status=InboxStatus.done, transaction_id=transaction_id, updated_at=utcnow())
        )
        async with self._sessions.begin() as session:
            res = await session.execute(stmt)
        return res.rowcount > 0

    async def unlink_inbox_transaction(self, *, tenant_id: int, inbox_id: int) -> None:
        stmt = (
            update(InboxItem)
            .where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id))
            .values(status=InboxStatus.pending, transaction_id=None, updated_at=utcnow())
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)

    async def save_calibration(self, calibration: TenantCalibration) -> None:
        values = {
            "tenant_id": calibration.tenant_id,
            "calibrated_suggested_threshold": calibration.calibrated_suggested_threshold,
            "calibrated_auto_threshold": calibration.calibrated_auto_threshold,
            "calibrated_high_confidence_threshold": calibration.calibrated_high_confidence_threshold,
            "total_suggestions": calibration.total_suggestions,
            "confirmed_suggestions": calibration.confirmed_suggestions,
            "declined_suggestions": calibration.declined_suggestions,
            "unmatched_suggestions": calibration.unmatched_suggestions,
            "suggested_match_accuracy": calibration.suggested_match_accuracy,
            "avg_confidence_confirmed": calibration.avg_confidence_confirmed,
            "avg_confidence_declined": calibration.avg_confidence_declined,
            "avg_confidence_unmatched": calibration.avg_confidence_unmatched,
            "last_calibrated_at": calibration.last_calibrated_at or utcnow(),
            "updated_at": utcnow(),
        }
        ins = self._insert(TenantMatchCalibration).values(**values)
        stmt = ins.on_conflict_do_update(
            index_elements=["tenant_id"],
            set_={key: getattr(ins.excluded, key) for key in values if key != "tenant_id"},
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)

    async def delete_calibration(self, *, tenant_id: int) -> bool:
        stmt = delete(TenantMatchCalibration).where(TenantMatchCalibration.tenant_id == tenant_id)
        async with self._sessions.begin() as session:
            res = await session.execute(stmt)
        return res.rowcount > 0
