"""Factory classes for creating catalog and test data models."""

import uuid
from typing import Any, Dict, Optional

from cap_broker.models.service_broker import (
    Catalog, Service, ServicePlan, ServiceMetadata, ServicePlanMetadata
)
from cap_broker.models.state import (
    BindingCredentials, Operation, OperationState, OperationType,
    ServiceBinding, ServiceInstance
)

SERVICE_ID = "cloud-application-protection-service"
STANDARD_PLAN_ID = "standard"
ENTERPRISE_PLAN_ID = "enterprise"


class ServiceBrokerFactory:
    """Factory for creating Service Broker API models."""

    @staticmethod
    def create_protection_service() -> Service:
        """Create the cloud application protection service definition."""
        return Service(
            id=SERVICE_ID,
            name=SERVICE_ID,
            description="Cloud Application Protection Service (CWAF)",
            bindable=True,
            plan_updateable=True,
            plans=[
                ServicePlan(
                    id=STANDARD_PLAN_ID,
                    name="standard",
                    description="Standard plan",
                    free=False,
                    bindable=True,
                    metadata=ServicePlanMetadata(
                        displayName="Standard",
                        bullets=["Web application firewall", "One protected application"]
                    )
                ),
                ServicePlan(
                    id=ENTERPRISE_PLAN_ID,
                    name="enterprise",
                    description="Enterprise plan",
                    free=False,
                    bindable=True,
                    metadata=ServicePlanMetadata(
                        displayName="Enterprise",
                        bullets=["Web application firewall", "Premium support"]
                    )
                )
            ],
            tags=["waf", "security", "cwaf"],
            metadata=ServiceMetadata(
                displayName="Cloud Application Protection Service",
                longDescription=(
                    "Radware Cloud Application Protection (CAP) provides "
                    "comprehensive web application security"
                ),
                providerDisplayName="Radware",
                documentationUrl="https://www.radware.com/products/cloud-application-protection/",
                supportUrl="https://support.radware.com/"
            )
        )

    @staticmethod
    def create_catalog() -> Catalog:
        """Create service catalog."""
        return Catalog(
            services=[ServiceBrokerFactory.create_protection_service()]
        )


class ServiceInstanceFactory:
    """Factory for creating ServiceInstance records."""

    @staticmethod
    def create_default(instance_id: Optional[str] = None, **overrides: Any) -> ServiceInstance:
        data: Dict[str, Any] = {
            'instance_id': instance_id or str(uuid.uuid4()),
            'service_id': SERVICE_ID,
            'plan_id': STANDARD_PLAN_ID,
            'upstream_account_id': 'acc-1',
            'upstream_service_id': 'svc-1',
        }
        data.update(overrides)
        return ServiceInstance(**data)


class ServiceBindingFactory:
    """Factory for creating ServiceBinding records."""

    @staticmethod
    def create_default(
        instance_id: str,
        binding_id: Optional[str] = None,
        email: str = "ops@example.com"
    ) -> ServiceBinding:
        return ServiceBinding(
            instance_id=instance_id,
            binding_id=binding_id or str(uuid.uuid4()),
            service_id=SERVICE_ID,
            plan_id=STANDARD_PLAN_ID,
            parameters={'email': email},
            credentials=BindingCredentials(user_id='user-1', email=email, account_id='acc-1'),
            upstream_user_id='user-1'
        )


class OperationFactory:
    """Factory for creating Operation records."""

    @staticmethod
    def create_in_progress(
        instance_id: str,
        op_type: OperationType = OperationType.PROVISION,
        operation_id: Optional[str] = None
    ) -> Operation:
        return Operation(
            operation_id=operation_id or f"{op_type.value}-{instance_id}-{uuid.uuid4().hex[:8]}",
            instance_id=instance_id,
            type=op_type,
            state=OperationState.IN_PROGRESS
        )
