"""Authentication providers."""

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import jwt

from cap_broker.config import AuthConfig
from .models import AuthContext, Principal

logger = logging.getLogger(__name__)


def _short_hash(value: str) -> str:
    """Non-reversible fingerprint for logging rejected usernames."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()[:12]


class AuthProvider(ABC):
    """Abstract base class for authentication providers."""

    @abstractmethod
    def authenticate(self, request_data: Dict[str, Any]) -> Optional[AuthContext]:
        """Authenticate a request and return auth context, or None."""
        pass


class BasicAuthProvider(AuthProvider):
    """Basic HTTP authentication against one configured platform credential."""

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def authenticate(self, request_data: Dict[str, Any]) -> Optional[AuthContext]:
        """Authenticate using Basic Auth."""
        auth_header = request_data.get('headers', {}).get('Authorization', '')

        if not auth_header.startswith('Basic '):
            return None

        try:
            decoded_credentials = base64.b64decode(auth_header[6:], validate=True).decode('utf-8')
            username, password = decoded_credentials.split(':', 1)
        except (ValueError, UnicodeDecodeError):
            logger.warning("Invalid Basic Auth format")
            return None

        # Both comparisons always run
        user_ok = hmac.compare_digest(username.encode('utf-8'), self.username.encode('utf-8'))
        password_ok = hmac.compare_digest(password.encode('utf-8'), self.password.encode('utf-8'))
        if not (user_ok and password_ok):
            logger.warning(f"Invalid Basic Auth credentials (user hash {_short_hash(username)})")
            return None

        return AuthContext(
            principal=Principal(subject=username),
            auth_method='basic_auth',
            client_ip=request_data.get('client_ip'),
            user_agent=request_data.get('user_agent'),
            authenticated=True
        )


class JWTProvider(AuthProvider):
    """Bearer JWT authentication.

    When ``broker_crn`` is set the token's ``sub`` claim must equal it.
    """

    def __init__(self, secret_key: str, algorithm: str = 'HS256',
                 audience: Optional[str] = None, issuer: Optional[str] = None,
                 broker_crn: Optional[str] = None):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.broker_crn = broker_crn

    def authenticate(self, request_data: Dict[str, Any]) -> Optional[AuthContext]:
        """Authenticate using JWT token."""
        auth_header = request_data.get('headers', {}).get('Authorization', '')

        if not auth_header.startswith('Bearer '):
            return None

        token = auth_header[7:]

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={'require': ['exp', 'sub']}
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid JWT token: {e}")
            return None

        if self.broker_crn and payload.get('sub') != self.broker_crn:
            logger.warning("JWT subject does not match broker CRN")
            return None

        return AuthContext(
            principal=Principal(subject=payload['sub'], claims=payload),
            auth_method='jwt',
            client_ip=request_data.get('client_ip'),
            user_agent=request_data.get('user_agent'),
            authenticated=True
        )


class CompositeAuthProvider(AuthProvider):
    """Composite authentication provider that tries multiple providers."""

    def __init__(self, providers: List[AuthProvider]):
        self.providers = providers

    def authenticate(self, request_data: Dict[str, Any]) -> Optional[AuthContext]:
        """Try authentication with each provider."""
        for provider in self.providers:
            auth_context = provider.authenticate(request_data)
            if auth_context and auth_context.authenticated:
                return auth_context
        return None


def create_auth_provider(auth_config: AuthConfig) -> Optional[AuthProvider]:
    """Build the provider chain for the configured schemes, or None if none is configured."""
    providers: List[AuthProvider] = []
    if auth_config.jwt_secret:
        providers.append(JWTProvider(
            secret_key=auth_config.jwt_secret,
            algorithm=auth_config.jwt_algorithm,
            audience=auth_config.jwt_audience,
            issuer=auth_config.jwt_issuer,
            broker_crn=auth_config.broker_crn
        ))
    if auth_config.username and auth_config.password:
        providers.append(BasicAuthProvider(auth_config.username, auth_config.password))

    if not providers:
        return None
    return providers[0] if len(providers) == 1 else CompositeAuthProvider(providers)
