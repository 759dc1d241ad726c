"""Caller identity resolved from the trusted auth proxy.

Authentication happens in front of this service. The proxy forwards the
authenticated user as headers:

- ``X-User-Id``: user identifier (required for an identity),
- ``X-User-Email``: optional e-mail,
- ``X-User-Roles``: optional comma-separated roles; ``settings.ADMIN_ROLE``
  marks an administrator.

When ``settings.IDENTITY_PROXY_SECRET`` is set, the headers are trusted
only if ``X-Proxy-Secret`` matches it. Every identity provider the proxy
supports ends up in this single shape.
"""

import contextvars
import hmac
from typing import Optional

from django.conf import settings
from django.utils.deprecation import MiddlewareMixin

from apps.orders.domain import Identity

USER_ID_CTX = contextvars.ContextVar("user_id", default="-")


def current_user(request) -> Optional[Identity]:
    """Resolve the caller from request headers, or None."""
    secret = getattr(settings, "IDENTITY_PROXY_SECRET", "")
    if secret:
        presented = request.META.get("HTTP_X_PROXY_SECRET", "")
        if not hmac.compare_digest(presented.encode(), secret.encode()):
            return None

    user_id = (request.META.get("HTTP_X_USER_ID") or "").strip()
    if not user_id:
        return None
    email = (request.META.get("HTTP_X_USER_EMAIL") or "").strip() or None
    roles = {r.strip().lower() for r in (request.META.get("HTTP_X_USER_ROLES") or "").split(",") if r.strip()}
    admin_role = getattr(settings, "ADMIN_ROLE", "admin").lower()
    return Identity(id=user_id, email=email, is_admin=admin_role in roles)


class IdentityMiddleware(MiddlewareMixin):
    """Set ``request.identity`` for the views."""

    def process_request(self, request):
        request.identity = current_user(request)
        request._user_id_token = USER_ID_CTX.set(request.identity.id if request.identity else "-")

    def process_response(self, request, response):
        token = getattr(request, "_user_id_token", None)
        if token is not None:
            USER_ID_CTX.reset(token)
            request._user_id_token = None
        return response
