from __future__ import annotations

import logging

from ledgermatch.models.models import InboxStatus, SuggestionStatus
from ledgermatch.models.records import SuggestionRecord
from ledgermatch.services.calibration import CalibrationRefresher
from ledgermatch.services.errors import InvalidFeedbackTransition, SuggestionNotFound
from ledgermatch.services.store import MatchingStore

logger = logging.getLogger(__name__)


class FeedbackService:
    def __init__(self, store: MatchingStore, refresher: CalibrationRefresher) -> None:
        self.store = store
        self.refresher = refresher

    async def _pending_suggestion(self, tenant_id: int, suggestion_id: int) -> SuggestionRecord:
        suggestion = await self.store.get_suggestion(tenant_id=tenant_id, suggestion_id=suggestion_id)
        if suggestion is None:
            raise SuggestionNotFound("Suggestion not found")
        if suggestion.status != SuggestionStatus.pending:
            raise InvalidFeedbackTransition(f"Suggestion is already {suggestion.status.value}")
        return suggestion

    async def confirm(self, tenant_id: int, suggestion_id: int) -> SuggestionRecord:
        suggestion = await self._pending_suggestion(tenant_id, suggestion_id)

        inbox = await self.store.get_inbox(tenant_id=tenant_id, inbox_id=suggestion.inbox_id)
        if inbox is None:
            raise SuggestionNotFound("Inbox item not found")
        if inbox.transaction_id is not None and inbox.transaction_id != suggestion.transaction_id:
            raise InvalidFeedbackTransition("Inbox item is already linked to another transaction")

        if inbox.transaction_id is None:
            linked = await self.store.link_inbox_transaction(
                tenant_id=tenant_id, inbox_id=suggestion.inbox_id, transaction_id=suggestion.transaction_id
            )
            if not linked:
                raise InvalidFeedbackTransition("Inbox item was linked concurrently")

        await self.store.set_suggestion_status(
            tenant_id=tenant_id, suggestion_id=suggestion_id, status=SuggestionStatus.confirmed
        )
        logger.info(
            "Suggestion %s confirmed",
            suggestion_id,
            extra={"tenant_id": tenant_id, "inbox_id": suggestion.inbox_id, "transaction_id": suggestion.transaction_id},
        )
        return await self.store.get_suggestion(tenant_id=tenant_id, suggestion_id=suggestion_id)

    async def decline(self, tenant_id: int, suggestion_id: int) -> SuggestionRecord:
        suggestion = await self._pending_suggestion(tenant_id, suggestion_id)

        inbox = await self.store.get_inbox(tenant_id=tenant_id, inbox_id=suggestion.inbox_id)
        if inbox is not None and inbox.transaction_id == suggestion.transaction_id:
            # declining an auto match releases the link
            await self.store.unlink_inbox_transaction(tenant_id=tenant_id, inbox_id=suggestion.inbox_id)
        else:
            await self.store.update_inbox_status(
                tenant_id=tenant_id, inbox_id=suggestion.inbox_id, status=InboxStatus.pending
            )

        await self.store.set_suggestion_status(
            tenant_id=tenant_id, suggestion_id=suggestion_id, status=SuggestionStatus.declined
        )
        logger.info(
            "Suggestion %s declined",
            suggestion_id,
            extra={"tenant_id": tenant_id, "inbox_id": suggestion.inbox_id, "transaction_id": suggestion.transaction_id},
        )
        return await self.store.get_suggestion(tenant_id=tenant_id, suggestion_id=suggestion_id)

    async def unmatch(self, tenant_id: int, inbox_id: int) -> SuggestionRecord | None:
        inbox = await self.store.get_inbox(tenant_id=tenant_id, inbox_id=inbox_id)
        if inbox is None:
            raise SuggestionNotFound("Inbox item not found")
        if inbox.transaction_id is None:
            raise InvalidFeedbackTransition("Inbox item is not linked to a transaction")

        suggestion = await self.store.get_suggestion_for_pair(
            tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=inbox.transaction_id
        )
        if suggestion is not None:
            await self.store.set_suggestion_status(
                tenant_id=tenant_id, suggestion_id=suggestion.id, status=SuggestionStatus.unmatched
            )
        await self.store.unlink_inbox_transaction(tenant_id=tenant_id, inbox_id=inbox_id)

        self.refresher.schedule(tenant_id)
        logger.info(
            "Inbox item unmatched",
            extra={"tenant_id": tenant_id, "inbox_id": inbox_id, "transaction_id": inbox.transaction_id},
        )
        if suggestion is None:
            return None
        return await self.store.get_suggestion(tenant_id=tenant_id, suggestion_id=suggestion.id)
