from __future__ import annotations


class MatchingError(Exception):
    pass


class EmbeddingError(MatchingError):
    pass


class SchemaMismatchError(MatchingError):
    """The store schema lacks columns a query depends on."""


class FeedbackError(MatchingError):
    pass


class SuggestionNotFound(FeedbackError, LookupError):
    pass


class InvalidFeedbackTransition(FeedbackError, ValueError):
    pass
