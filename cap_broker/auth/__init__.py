"""Authentication module."""

from .middleware import AuthMiddleware, get_auth_context
from .providers import (
    AuthProvider, BasicAuthProvider, CompositeAuthProvider, JWTProvider, create_auth_provider
)
from .models import AuthContext, Principal

__all__ = [
    'AuthMiddleware',
    'get_auth_context',
    'AuthProvider',
    'BasicAuthProvider',
    'CompositeAuthProvider',
    'JWTProvider',
    'create_auth_provider',
    'AuthContext',
    'Principal'
]
