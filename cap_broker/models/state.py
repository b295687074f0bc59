"""Persistent broker state: instances, bindings and operations."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationState(str, Enum):
    """OSB last_operation states."""
    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationState.IN_PROGRESS


class OperationType(str, Enum):
    """Asynchronous lifecycle actions."""
    PROVISION = "provision"
    DEPROVISION = "deprovision"


class ServiceInstance(BaseModel):
    """A provisioned service instance and its upstream tenant."""
    instance_id: str = Field(..., description="Caller-supplied instance identifier")
    service_id: str = Field(..., description="OSB service identifier")
    plan_id: str = Field(..., description="OSB plan identifier")
    context: Dict[str, Any] = Field(default_factory=dict, description="Platform context")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Provisioning parameters")
    upstream_account_id: Optional[str] = Field(None, description="Upstream tenant account id")
    upstream_service_id: Optional[str] = Field(None, description="Upstream protection service id")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")


class BindingCredentials(BaseModel):
    """Credentials returned to the platform for a binding."""
    user_id: str = Field(..., description="Upstream contact user id")
    email: str = Field(..., description="Contact email")
    account_id: str = Field(..., description="Owning upstream account id")


class ServiceBinding(BaseModel):
    """A contact-user binding scoped to one instance."""
    instance_id: str = Field(..., description="Owning instance identifier")
    binding_id: str = Field(..., description="Caller-supplied binding identifier")
    service_id: str
    plan_id: str
    bind_resource: Optional[Dict[str, Any]] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    credentials: BindingCredentials
    upstream_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Operation(BaseModel):
    """Handle of an asynchronous provision or deprovision."""
    operation_id: str = Field(..., description="Opaque operation token")
    instance_id: str = Field(..., description="Instance the operation acts on")
    type: OperationType
    state: OperationState = OperationState.IN_PROGRESS
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal
