"""Authentication middleware."""

import logging
from typing import Optional

from flask import g, request

from cap_broker.exceptions import AuthenticationError
from .models import AuthContext
from .providers import AuthProvider

logger = logging.getLogger(__name__)


class AuthMiddleware:
    """Rejects unauthenticated requests before they reach the broker routes.

    With no provider configured every request passes with an anonymous
    context.
    """

    def __init__(self, auth_provider: Optional[AuthProvider] = None):
        self.auth_provider = auth_provider

        # Endpoints that don't require authentication
        self.public_endpoints = {
            '/health',
            '/metrics',
        }

    @property
    def enabled(self) -> bool:
        return self.auth_provider is not None

    def init_app(self, app):
        """Initialize middleware with Flask app."""
        app.before_request(self.before_request)
        if not self.enabled:
            logger.warning("No broker credentials configured; authentication is disabled")

    def before_request(self):
        """Authenticate the request, raising AuthenticationError on failure."""
        if not self.enabled or request.path in self.public_endpoints or request.method == 'OPTIONS':
            g.auth_context = AuthContext()
            return

        request_data = {
            'headers': dict(request.headers),
            'client_ip': request.remote_addr,
            'user_agent': request.headers.get('User-Agent'),
        }

        auth_context = self.auth_provider.authenticate(request_data)
        if not auth_context or not auth_context.authenticated:
            logger.warning(f"Authentication failed: method={request.method}, path={request.path}")
            raise AuthenticationError("Authentication required. Provide valid credentials.")

        g.auth_context = auth_context
        logger.debug(
            f"Authenticated request: subject={auth_context.principal.subject}, "
            f"method={request.method}, path={request.path}"
        )


def get_auth_context() -> Optional[AuthContext]:
    """Get current authentication context."""
    return getattr(g, 'auth_context', None)
