from __future__ import annotations

from datetime import date, timedelta

import pytest

from fakes import BASE, InMemoryStore, unit
from ledgermatch.models.models import InboxType
from ledgermatch.services.retrieval import CandidateRetriever, date_window

D = date(2025, 3, 1)


def make_inbox(store: InMemoryStore, **kw):
    kw.setdefault("amount", 100.0)
    kw.setdefault("currency", "EUR")
    kw.setdefault("date", D)
    kw.setdefault("embedding", BASE)
    return store.add_inbox(**kw)


def test_date_windows_by_type():
    w = date_window(InboxType.expense, D)
    assert (w.start, w.end) == (D - timedelta(days=93), D + timedelta(days=10))
    w = date_window(InboxType.invoice, D)
    assert (w.start, w.end) == (D - timedelta(days=10), D + timedelta(days=123))
    for t in (InboxType.receipt, InboxType.other, None):
        w = date_window(t, D)
        assert (w.start, w.end) == (D - timedelta(days=60), D + timedelta(days=30))

    narrow = date_window(InboxType.expense, D).narrowed(30)
    assert (narrow.start, narrow.end) == (D - timedelta(days=63), D - timedelta(days=20))


async def test_tiers_run_in_order_and_short_circuit():
    store = InMemoryStore()
    inbox = make_inbox(store)
    for _ in range(5):
        store.add_payment(amount=100.0, currency="EUR", date=D, embedding=unit(0.5))
    for _ in range(10):
        store.add_payment(amount=110.0, currency="USD", date=D, embedding=unit(0.9))

    found = await CandidateRetriever(store).retrieve(inbox)

    assert len(found) == 15
    # tier 1 then tier 3; 15 candidates is enough to skip tier 4, no base currency skips tier 2
    assert [(q.max_distance, q.require_embedding) for q in store.queries] == [(0.6, False), (0.35, True)]
    assert store.queries[0].currency == "EUR"
    assert store.queries[0].min_amount == pytest.approx(99.0)
    assert store.queries[1].min_amount == pytest.approx(80.0)


async def test_tier_four_runs_when_few_candidates():
    store = InMemoryStore()
    inbox = make_inbox(store, type=InboxType.invoice)
    store.add_payment(amount=100.0, currency="EUR", date=D, embedding=unit(0.5))

    await CandidateRetriever(store).retrieve(inbox)

    assert [q.max_distance for q in store.queries] == [0.6, 0.35, 0.45]
    tier4 = store.queries[-1]
    assert (tier4.date_from, tier4.date_to) == (D + timedelta(days=20), D + timedelta(days=93))


async def test_candidates_are_deduplicated_across_tiers():
    store = InMemoryStore()
    inbox = make_inbox(store)
    a = store.add_payment(amount=100.0, currency="EUR", date=D, embedding=unit(0.95))
    b = store.add_payment(amount=100.0, currency="EUR", date=D, embedding=unit(0.9))

    found = await CandidateRetriever(store).retrieve(inbox)

    assert [c.id for c in found] == [a.id, b.id]
    assert found[0].embedding_distance == pytest.approx(0.05)


async def test_tier_one_keeps_payments_without_embeddings_last():
    store = InMemoryStore()
    inbox = make_inbox(store)
    bare = store.add_payment(amount=100.0, currency="EUR", date=D)
    close = store.add_payment(amount=100.0, currency="EUR", date=D, embedding=unit(0.7))

    found = await CandidateRetriever(store).retrieve(inbox)

    assert [c.id for c in found] == [close.id, bare.id]


async def test_base_currency_tier_matches_cross_currency():
    store = InMemoryStore()
    inbox = make_inbox(store, amount=11700.0, currency="RSD", base_amount=100.0, base_currency="EUR")
    p = store.add_payment(amount=100.0, currency="EUR", base_amount=100.0, base_currency="EUR", date=D)

    found = await CandidateRetriever(store).retrieve(inbox)

    assert [c.id for c in found] == [p.id]
    tier2 = store.queries[1]
    assert tier2.amount_field == "base_amount"
    assert tier2.exclude_currency == "RSD"


async def test_base_currency_tier_fails_closed():
    store = InMemoryStore(base_currency_supported=False)
    inbox = make_inbox(store, amount=11700.0, currency="RSD", base_amount=100.0, base_currency="EUR")
    semantic = store.add_payment(amount=11000.0, currency="RSD", date=D, embedding=unit(0.9))

    found = await CandidateRetriever(store).retrieve(inbox)

    assert [c.id for c in found] == [semantic.id]


async def test_unknown_amount_skips_tier_one_and_drops_amount_filter():
    store = InMemoryStore()
    inbox = make_inbox(store, amount=None)
    p = store.add_payment(amount=123456.0, currency="USD", date=D, embedding=unit(0.9))

    found = await CandidateRetriever(store).retrieve(inbox)

    assert [c.id for c in found] == [p.id]
    assert store.queries[0].require_embedding
    assert store.queries[0].min_amount is None


async def test_retrieval_requires_embedding_and_date():
    store = InMemoryStore()
    with pytest.raises(ValueError):
        await CandidateRetriever(store).retrieve(make_inbox(store, embedding=None))
    with pytest.raises(ValueError):
        await CandidateRetriever(store).retrieve(make_inbox(store, date=None))
