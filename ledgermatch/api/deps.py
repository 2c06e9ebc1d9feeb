from __future__ import annotations

from fastapi import Request

from ledgermatch.services.container import MatchingComponents


def get_components(request: Request) -> MatchingComponents:
    return request.app.state.components
