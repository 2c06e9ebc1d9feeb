from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import date

from ledgermatch.models.models import InboxType


def calculate_amount_score(amount1: float | None, amount2: float | None) -> float:
    """Score two amounts by relative difference of their absolute values."""
    if amount1 is None or amount2 is None:
        return 0.0

    abs1 = abs(float(amount1))
    abs2 = abs(float(amount2))
    if abs1 == abs2:
        return 1.0

    percent_diff = abs(abs1 - abs2) / max(abs1, abs2)
    if percent_diff <= 0.05:
        return 0.9
    if percent_diff <= 0.15:
        return 0.7
    return 0.3


def calculate_currency_score(currency1: str | None, currency2: str | None) -> float:
    if not currency1 or not currency2:
        return 0.5
    if currency1 == currency2:
        return 1.0
    return 0.3


def calculate_date_score(inbox_date: date | None, transaction_date: date | None, inbox_type: InboxType | None = None) -> float:
    # inbox_type is accepted for parity with the retrieval windows; the ladder is type-independent
    if inbox_date is None or transaction_date is None:
        return 0.5

    diff_days = abs((transaction_date - inbox_date).days)
    if diff_days == 0:
        return 1.0
    if diff_days <= 1:
        return 0.9
    if diff_days <= 3:
        return 0.8
    if diff_days <= 7:
        return 0.7
    if diff_days <= 14:
        return 0.6
    return 0.5


def is_perfect_financial_match(
    amount1: float | None,
    currency1: str | None,
    amount2: float | None,
    currency2: str | None,
) -> bool:
    if amount1 is None or amount2 is None:
        return False
    return abs(abs(float(amount1)) - abs(float(amount2))) < 0.01 and currency1 == currency2


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Embeddings must have same dimensions ({len(a)} != {len(b)})")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return 1.0 - cosine_similarity(a, b)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))
