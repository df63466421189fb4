"""Page-route redirects driven by the resolved session."""

from __future__ import annotations

from urllib.parse import urlencode

from src.models import Principal

DASHBOARD_PREFIXES = (
    "/assignments",
    "/submissions",
    "/topics",
    "/achievements",
    "/wishlist",
    "/rewards",
    "/analytics",
    "/settings",
    "/trophy-case",
    "/performance",
)
ONBOARD_PATH = "/onboard"
AUTH_PAGES = frozenset({"/login", "/register"})

LOGIN_PATH = "/login"
HOME_PATH = "/assignments"


def auth_redirect(path: str, principal: Principal | None) -> str | None:
    """Return the redirect target for a page request, or None to continue.

    Anonymous callers are sent to the login page from protected pages;
    signed-in callers are sent away from the login and register pages.
    """
    if principal is None:
        if path.startswith(DASHBOARD_PREFIXES) or path == ONBOARD_PATH:
            return f"{LOGIN_PATH}?{urlencode({'redirect': path})}"
        return None
    if path in AUTH_PAGES:
        return HOME_PATH
    return None
