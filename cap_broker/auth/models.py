"""Authentication models."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class Principal:
    """Verified caller identity (a platform account or a broker CRN)."""
    subject: str
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'subject': self.subject}


@dataclass
class AuthContext:
    """Authentication context for requests."""
    principal: Optional[Principal] = None
    auth_method: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    authenticated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert auth context to dictionary (without credentials)."""
        return {
            'principal': self.principal.to_dict() if self.principal else None,
            'auth_method': self.auth_method,
            'client_ip': self.client_ip,
            'user_agent': self.user_agent,
            'authenticated': self.authenticated
        }
