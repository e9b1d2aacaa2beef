"""Access control for pages that require a signed-in partner."""
from __future__ import annotations

from typing import Optional

from fastapi import Request, status
from fastapi.responses import RedirectResponse

from .sessions import AuthState, SessionSnapshot


def may_enter(snapshot: SessionSnapshot) -> bool:
    """Return ``True`` when a protected page may be rendered."""

    return snapshot.state is AuthState.AUTHENTICATED


class AccessGuard:
    """Redirect unauthenticated navigation to the login page.

    Nothing is cached between requests, so a session that expired since the
    previous page is caught on the next guarded navigation.
    """

    def __init__(self, login_route: str = "show_login") -> None:
        self._login_route = login_route

    def check(self, request: Request, snapshot: SessionSnapshot) -> Optional[RedirectResponse]:
        if may_enter(snapshot):
            return None
        return RedirectResponse(
            request.url_for(self._login_route),
            status_code=status.HTTP_303_SEE_OTHER,
        )


__all__ = ["AccessGuard", "may_enter"]
