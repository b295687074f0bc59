"""Open Service Broker API data models."""

from pydantic import BaseModel, Field, field_validator
from typing import Dict, Any, Optional, List

from cap_broker.models.state import BindingCredentials, OperationState


class ServicePlanMetadata(BaseModel):
    """Service plan metadata."""
    displayName: Optional[str] = None
    bullets: Optional[List[str]] = None
    costs: Optional[List[Dict[str, Any]]] = None


class ServicePlan(BaseModel):
    """Service plan definition."""
    id: str = Field(..., description="Unique identifier for the service plan")
    name: str = Field(..., description="Human-readable name for the service plan")
    description: str = Field(..., description="Description of the service plan")
    free: bool = Field(default=False, description="Whether the plan is free")
    bindable: bool = Field(default=True, description="Whether the plan supports binding")
    metadata: Optional[ServicePlanMetadata] = None
    schemas: Optional[Dict[str, Any]] = None


class ServiceMetadata(BaseModel):
    """Service metadata."""
    displayName: Optional[str] = None
    imageUrl: Optional[str] = None
    longDescription: Optional[str] = None
    providerDisplayName: Optional[str] = None
    documentationUrl: Optional[str] = None
    supportUrl: Optional[str] = None


class Service(BaseModel):
    """Service definition for catalog."""
    id: str = Field(..., description="Unique identifier for the service")
    name: str = Field(..., description="Human-readable name for the service")
    description: str = Field(..., description="Description of the service")
    bindable: bool = Field(default=True, description="Whether the service supports binding")
    plan_updateable: bool = Field(default=False, description="Whether the service supports plan updates")
    plans: List[ServicePlan] = Field(..., description="List of service plans")
    tags: Optional[List[str]] = None
    metadata: Optional[ServiceMetadata] = None
    requires: Optional[List[str]] = None


class Catalog(BaseModel):
    """Service catalog response."""
    services: List[Service] = Field(..., description="List of available services")


def _bag(v):
    """Coerce an absent key-value bag to an empty dict and reject non-objects."""
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ValueError("must be a JSON object")
    return v


class ProvisionRequest(BaseModel):
    """Service instance provisioning request.

    ``service_id`` and ``plan_id`` are optional at the model level so the
    protocol engine can report their absence with the OSB description.
    """
    service_id: Optional[str] = None
    plan_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    organization_guid: Optional[str] = None
    space_guid: Optional[str] = None

    @field_validator('context', 'parameters', mode='before')
    @classmethod
    def validate_bags(cls, v):
        return _bag(v)


class ProvisionResponse(BaseModel):
    """Service instance provisioning response."""
    dashboard_url: Optional[str] = None
    operation: Optional[str] = None


class UpdateRequest(BaseModel):
    """Service instance update request."""
    service_id: Optional[str] = None
    plan_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    parameters: Optional[Dict[str, Any]] = None
    previous_values: Optional[Dict[str, Any]] = None


class UpdateResponse(BaseModel):
    """Service instance update response."""
    operation: Optional[str] = None


class DeprovisionResponse(BaseModel):
    """Service instance deprovisioning response."""
    operation: Optional[str] = None


class BindRequest(BaseModel):
    """Service binding request."""
    service_id: Optional[str] = None
    plan_id: Optional[str] = None
    bind_resource: Optional[Dict[str, Any]] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None

    @field_validator('parameters', mode='before')
    @classmethod
    def validate_parameters(cls, v):
        return _bag(v)


class BindResponse(BaseModel):
    """Service binding response."""
    credentials: BindingCredentials


class UnbindResponse(BaseModel):
    """Service unbinding response (always empty)."""


class LastOperationResponse(BaseModel):
    """Last operation status response."""
    state: OperationState = Field(..., description="State of the operation")
    description: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response."""
    description: str = Field(..., description="Error description")
    error: Optional[str] = Field(None, description="OSB error code")
    instance_usable: Optional[bool] = None
    update_repeatable: Optional[bool] = None
