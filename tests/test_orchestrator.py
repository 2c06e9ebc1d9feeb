from __future__ import annotations

from datetime import date, timedelta

import pytest

from fakes import BASE, FakeEmbeddingClient, InMemoryStore, unit
from ledgermatch.models.models import InboxStatus, InboxType, MatchType, SuggestionStatus
from ledgermatch.models.records import TenantCalibration
from ledgermatch.services.orchestrator import MatchOrchestrator
from ledgermatch.services.scoring import ScoringEngine
from ledgermatch.utils.scoring import calculate_amount_score

D = date(2025, 3, 1)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def orchestrator(store):
    return MatchOrchestrator(store, FakeEmbeddingClient())


def invoice(store, **kw):
    kw.setdefault("amount", 100.0)
    kw.setdefault("currency", "EUR")
    kw.setdefault("date", D)
    kw.setdefault("embedding", BASE)
    return store.add_inbox(**kw)


def perfect_payment(store, **kw):
    # same amount/currency/day, strong embedding: confidence 1.0
    kw.setdefault("amount", 100.0)
    kw.setdefault("currency", "EUR")
    kw.setdefault("date", D)
    kw.setdefault("embedding", unit(0.95))
    return store.add_payment(**kw)


def late_payment(store, **kw):
    # exact amount 20 days later with a weak embedding: confidence 0.8, high_confidence
    kw.setdefault("amount", 100.0)
    kw.setdefault("currency", "EUR")
    kw.setdefault("date", D + timedelta(days=20))
    kw.setdefault("embedding", unit(0.5))
    return store.add_payment(**kw)


async def test_auto_match_links_inbox(store, orchestrator):
    item = invoice(store)
    p = perfect_payment(store)

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert outcome.matched and outcome.auto_matched
    assert outcome.match.match_type == MatchType.auto_matched
    assert outcome.match.tier == 1
    linked = store.inbox[item.id]
    assert linked.status == InboxStatus.done
    assert linked.transaction_id == p.id
    details = store.suggestions[outcome.suggestion_id].match_details
    assert details["tier"] == 1
    assert details["is_perfect_financial_match"] is True


async def test_high_confidence_becomes_suggestion(store, orchestrator):
    item = invoice(store)
    p = late_payment(store)

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert outcome.matched and not outcome.auto_matched
    assert outcome.match.transaction_id == p.id
    assert outcome.match.match_type == MatchType.high_confidence
    assert outcome.match.confidence_score == pytest.approx(0.8)
    assert store.inbox[item.id].status == InboxStatus.suggested_match
    assert store.inbox[item.id].transaction_id is None


async def test_no_candidates_marks_no_match(store, orchestrator):
    item = invoice(store)

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert not outcome.matched and outcome.error is None
    assert outcome.matches == 0
    assert store.inbox[item.id].status == InboxStatus.no_match


async def test_missing_embedding_or_date_is_skipped(store, orchestrator):
    no_vec = invoice(store, embedding=None)
    no_date = invoice(store, date=None)
    perfect_payment(store)

    assert await orchestrator.find_matches_tiered(1, no_vec.id) is None
    assert await orchestrator.find_matches_tiered(1, no_date.id) is None
    assert await orchestrator.find_matches_tiered(1, 999) is None


async def test_dismissed_pair_is_skipped(store, orchestrator):
    item = invoice(store)
    best = perfect_payment(store)
    runner_up = late_payment(store)
    store.add_suggestion(inbox_id=item.id, transaction_id=best.id, status=SuggestionStatus.declined)

    match = await orchestrator.find_matches_tiered(1, item.id)

    assert match.transaction_id == runner_up.id


async def test_all_dismissed_gives_none(store, orchestrator):
    item = invoice(store)
    p = perfect_payment(store)
    store.add_suggestion(inbox_id=item.id, transaction_id=p.id, status=SuggestionStatus.unmatched)

    assert await orchestrator.find_matches_tiered(1, item.id) is None


async def test_rerun_updates_the_same_suggestion(store, orchestrator):
    item = invoice(store)
    late_payment(store)

    first = await orchestrator.process_inbox_matching(1, item.id)
    second = await orchestrator.process_inbox_matching(1, item.id)

    assert first.suggestion_id == second.suggestion_id
    assert len(store.suggestions) == 1


async def test_auto_match_on_linked_item_keeps_existing_link(store, orchestrator):
    item = invoice(store, status=InboxStatus.done, transaction_id=999)
    perfect_payment(store)

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert outcome.matched and not outcome.auto_matched
    assert store.inbox[item.id].transaction_id == 999
    assert store.inbox[item.id].status == InboxStatus.done


async def test_scoring_error_is_reported_on_outcome(store):
    def broken(a1, a2):
        raise RuntimeError("amount exploded")

    orchestrator = MatchOrchestrator(store, FakeEmbeddingClient(), scoring=ScoringEngine(store, amount_scorer=broken))
    item = invoice(store)
    perfect_payment(store)

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert outcome.error == "amount exploded"
    assert not outcome.matched
    assert store.inbox[item.id].status == InboxStatus.pending
    assert await orchestrator.find_matches_tiered(1, item.id) is None


async def test_proven_merchant_pattern_upgrades_to_auto(store, orchestrator):
    store.calibrations[1] = TenantCalibration(
        tenant_id=1,
        calibrated_suggested_threshold=0.6,
        calibrated_auto_threshold=0.95,
        calibrated_high_confidence_threshold=0.75,
    )
    # three confirmed historical pairs from the same merchant, outside the date window
    for _ in range(3):
        past_inbox = invoice(store, status=InboxStatus.done, date=D - timedelta(days=300))
        past_payment = store.add_payment(amount=100.0, currency="USD", date=D - timedelta(days=300), embedding=unit(0.88))
        store.add_suggestion(
            inbox_id=past_inbox.id, transaction_id=past_payment.id, status=SuggestionStatus.confirmed, confidence_score=0.95
        )

    item = invoice(store)
    # currency mismatch keeps this off the perfect-financial path: confidence 0.935
    p = store.add_payment(amount=100.0, currency="USD", date=D + timedelta(days=7), embedding=unit(0.88))

    outcome = await orchestrator.process_inbox_matching(1, item.id)

    assert outcome.match.transaction_id == p.id
    assert outcome.match.confidence_score == pytest.approx(0.935)
    assert outcome.match.match_type == MatchType.auto_matched
    assert outcome.match.merchant_pattern_eligible
    assert outcome.match.reason.startswith("Proven merchant pattern")
    assert outcome.auto_matched
    assert store.inbox[item.id].transaction_id == p.id
    assert store.suggestions[outcome.suggestion_id].match_details["merchant_pattern_eligible"] is True


async def test_pattern_without_history_does_not_upgrade(store, orchestrator):
    store.calibrations[1] = TenantCalibration(
        tenant_id=1,
        calibrated_suggested_threshold=0.6,
        calibrated_auto_threshold=0.95,
        calibrated_high_confidence_threshold=0.75,
    )
    item = invoice(store)
    store.add_payment(amount=100.0, currency="USD", date=D + timedelta(days=7), embedding=unit(0.88))

    match = await orchestrator.find_matches_tiered(1, item.id)

    assert match.match_type == MatchType.high_confidence
    assert not match.merchant_pattern_eligible
    assert match.reason is None


async def test_reverse_matching_links_best_inbox(store, orchestrator):
    payment = store.add_payment(amount=100.0, currency="EUR", date=D, embedding=BASE)
    weak = invoice(store, type=InboxType.expense, amount=90.0, embedding=unit(0.6))
    strong = invoice(store, type=InboxType.expense, embedding=unit(0.95))

    outcome = await orchestrator.process_transaction_matching(1, payment.id)

    assert outcome.matched and outcome.auto_matched
    assert outcome.inbox_id == strong.id
    assert store.inbox[strong.id].transaction_id == payment.id
    assert store.inbox[weak.id].transaction_id is None
    details = store.suggestions[outcome.suggestion_id].match_details
    assert details["direction"] == "transaction_to_inbox"


async def test_reverse_matching_skips_dismissed_and_linked(store, orchestrator):
    payment = store.add_payment(amount=100.0, currency="EUR", date=D, embedding=BASE)
    dismissed = invoice(store, type=InboxType.expense, embedding=unit(0.95))
    invoice(store, type=InboxType.expense, embedding=unit(0.95), status=InboxStatus.done, transaction_id=77)
    store.add_suggestion(inbox_id=dismissed.id, transaction_id=payment.id, status=SuggestionStatus.declined)

    outcome = await orchestrator.process_transaction_matching(1, payment.id)

    assert not outcome.matched and outcome.error is None
    assert await orchestrator.find_inbox_matches_for_transaction(1, payment.id) is None


async def test_reverse_matching_without_embedding(store, orchestrator):
    payment = store.add_payment(amount=100.0, currency="EUR", date=D)
    invoice(store, type=InboxType.expense)

    assert await orchestrator.find_inbox_matches_for_transaction(1, payment.id) is None


async def test_batch_process_counts(store, orchestrator):
    auto_item = invoice(store)
    perfect_payment(store)
    lonely = invoice(store, amount=5000.0, currency="JPY", embedding=[0.0, 0.0, 1.0])

    result = await orchestrator.batch_process_matching(1, [auto_item.id, lonely.id])

    assert (result.processed, result.auto_matched, result.suggestions) == (2, 1, 1)


async def test_on_the_fly_matching_embeds_once(store):
    embeddings = FakeEmbeddingClient()
    orchestrator = MatchOrchestrator(store, embeddings)
    item = invoice(store, display_name="Acme", website="https://www.acme.io", embedding=None)
    exact = store.add_payment(amount=100.0, currency="EUR", date=D, name="ACME GMBH")
    store.add_payment(amount=120.0, currency="EUR", date=D - timedelta(days=5), name="Other")
    store.add_payment(amount=100.0, currency="EUR", date=D - timedelta(days=200), name="Too old")

    results = await orchestrator.find_matches_for_inbox(1, item.id)

    assert len(embeddings.calls) == 1
    assert embeddings.calls[0][0] == "Acme acme.io"
    assert len(embeddings.calls[0]) == 3
    assert results[0].transaction_id == exact.id
    assert len(results) == 2
    scores = [r.confidence_score for r in results]
    assert scores == sorted(scores, reverse=True)


async def test_on_the_fly_matching_never_raises(store):
    class BrokenEmbeddings(FakeEmbeddingClient):
        async def generate_embeddings(self, texts):
            raise RuntimeError("provider down")

    orchestrator = MatchOrchestrator(store, BrokenEmbeddings())
    item = invoice(store)
    store.add_payment(amount=100.0, currency="EUR", date=D)

    assert await orchestrator.find_matches_for_inbox(1, item.id) == []
    assert await orchestrator.find_matches_for_inbox(1, 12345) == []


async def test_scoring_error_is_counted_per_item_only(store):
    def amount_scorer(a1, a2):
        if a1 == 13.0:
            raise RuntimeError("boom")
        return calculate_amount_score(a1, a2)

    orchestrator = MatchOrchestrator(
        store, FakeEmbeddingClient(), scoring=ScoringEngine(store, amount_scorer=amount_scorer)
    )
    ok = invoice(store)
    bad = invoice(store, amount=13.0)
    perfect_payment(store)
    perfect_payment(store, amount=13.0)

    assert (await orchestrator.process_inbox_matching(1, ok.id)).auto_matched
    assert (await orchestrator.process_inbox_matching(1, bad.id)).error == "boom"
