"""OSB protocol engine: provisioning, binding and operation lifecycle."""

import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from cap_broker.clients.upstream_client import UpstreamClient, UpstreamTenant
from cap_broker.config import BrokerConfig
from cap_broker.exceptions import (
    AsyncRequiredError, BrokerError, ConflictError, ErrorCode, GoneError,
    InstanceNotFoundError, OperationInProgressError, OperationNotFoundError,
    RequiresAppError, ValidationError
)
from cap_broker.models.factory import ServiceBrokerFactory
from cap_broker.models.service_broker import (
    BindRequest, BindResponse, Catalog, DeprovisionResponse, LastOperationResponse,
    ProvisionRequest, ProvisionResponse, UnbindResponse, UpdateRequest, UpdateResponse
)
from cap_broker.models.state import (
    BindingCredentials, Operation, OperationState, OperationType,
    ServiceInstance, utcnow
)
from cap_broker.monitoring.metrics import MetricsCollector, get_metrics_collector
from cap_broker.services.jobs import JobScheduler
from cap_broker.storage.base import StateStore
from cap_broker.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

STALE_OPERATION_DESCRIPTION = "Operation expired before completion; re-issue the request"


class OutcomeStatus(str, Enum):
    """How a verb completed; the HTTP layer maps this to a status code."""
    CREATED = "created"
    EXISTING = "existing"
    ACCEPTED = "accepted"
    COMPLETED = "completed"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    OutcomeStatus.CREATED: 201,
    OutcomeStatus.EXISTING: 200,
    OutcomeStatus.ACCEPTED: 202,
    OutcomeStatus.COMPLETED: 200,
}


@dataclass
class BrokerOutcome:
    """Successful result of an OSB verb."""
    status: OutcomeStatus
    body: Optional[BaseModel] = None

    @property
    def http_status(self) -> int:
        return self.status.http_status

    def to_dict(self) -> Dict[str, Any]:
        if self.body is None:
            return {}
        return self.body.model_dump(mode='json', exclude_none=True)


def _tracked(operation: str):
    """Record osb_operations_total and osb_operation_duration_seconds for a verb."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            start = time.monotonic()
            status = 'error'
            try:
                result = await func(self, *args, **kwargs)
                status = result.status.value if isinstance(result, BrokerOutcome) else 'succeeded'
                return result
            except BrokerError as e:
                status = e.kind.value
                raise
            finally:
                self.metrics.increment_counter(
                    'osb_operations_total', labels={'operation': operation, 'status': status}
                )
                self.metrics.observe_histogram(
                    'osb_operation_duration_seconds', time.monotonic() - start,
                    labels={'operation': operation}
                )
        return wrapper
    return decorator


class BrokerService:
    """Implements the OSB verbs against a state store and the upstream API.

    Requests for the same instance id are serialized with a per-key lock, so
    the existence check, the pending-operation gate and the registration of a
    new operation act as one step. Asynchronous work is handed to the
    :class:`JobScheduler` and reports back only through the operation record.
    """

    def __init__(
        self,
        store: StateStore,
        upstream: UpstreamClient,
        scheduler: JobScheduler,
        broker_config: BrokerConfig,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.upstream = upstream
        self.scheduler = scheduler
        self.config = broker_config
        self.metrics = metrics or get_metrics_collector()
        self._locks = KeyedLock()

    # Helpers

    def get_catalog(self) -> Catalog:
        return ServiceBrokerFactory.create_catalog()

    def dashboard_url(self, instance_id: str) -> str:
        return f"{self.config.dashboard_base}/{instance_id}"

    @staticmethod
    def _operation_id(op_type: OperationType, instance_id: str) -> str:
        return f"{op_type.value}-{instance_id}-{int(time.time() * 1000)}"

    def _is_stale(self, operation: Operation) -> bool:
        timeout = self.config.operation_timeout_seconds
        if operation.state != OperationState.IN_PROGRESS or timeout <= 0:
            return False
        if self.scheduler.is_running(operation.operation_id):
            return False
        return (utcnow() - operation.created_at).total_seconds() > timeout

    async def _expire_if_stale(self, operation: Operation) -> Operation:
        if not self._is_stale(operation):
            return operation
        logger.warning(
            f"Expiring stale operation {operation.operation_id}",
            extra={'instance_id': operation.instance_id, 'operation_id': operation.operation_id}
        )
        return await self.store.update_operation(
            operation.operation_id, OperationState.FAILED, STALE_OPERATION_DESCRIPTION
        )

    async def _ensure_no_pending(self, instance_id: str) -> None:
        if not await self.store.has_pending_operation(instance_id):
            return
        for operation in await self.store.get_pending_operations(instance_id):
            await self._expire_if_stale(operation)
        if await self.store.has_pending_operation(instance_id):
            raise OperationInProgressError(instance_id)

    async def _start_operation(self, op_type: OperationType, instance_id: str,
                               description: str) -> str:
        operation_id = self._operation_id(op_type, instance_id)
        await self.store.set_operation(instance_id, operation_id, {
            'type': op_type,
            'state': OperationState.IN_PROGRESS,
            'description': description,
        })
        logger.info(
            f"Registered {op_type.value} operation",
            extra={'instance_id': instance_id, 'operation_id': operation_id}
        )
        return operation_id

    async def _finish_job(self, op_type: OperationType, instance_id: str, operation_id: str,
                          work, success_description: str) -> None:
        """Run the body of a detached job and record its terminal state."""
        start = time.monotonic()
        extra = {'instance_id': instance_id, 'operation_id': operation_id}
        try:
            await work
        except BrokerError as e:
            logger.warning(f"Asynchronous {op_type.value} failed: {e}", extra=extra)
            state, description = OperationState.FAILED, e.message
        except Exception:
            logger.exception(f"Asynchronous {op_type.value} crashed", extra=extra)
            state, description = OperationState.FAILED, f"Internal error during {op_type.value}"
        else:
            logger.info(f"Asynchronous {op_type.value} succeeded", extra=extra)
            state, description = OperationState.SUCCEEDED, success_description

        await self.store.update_operation(operation_id, state, description)
        self.metrics.increment_counter(
            'osb_operations_total',
            labels={'operation': f"{op_type.value}_job", 'status': state.value}
        )
        self.metrics.observe_histogram(
            'osb_operation_duration_seconds', time.monotonic() - start,
            labels={'operation': f"{op_type.value}_job"}
        )

    # Provision

    async def _create_instance(self, instance_id: str, request: ProvisionRequest) -> ServiceInstance:
        tenant = await self.upstream.create_account_and_service(
            instance_id, request.plan_id, request.parameters
        )
        try:
            return await self.store.create_instance(instance_id, {
                'service_id': request.service_id,
                'plan_id': request.plan_id,
                'context': request.context,
                'parameters': request.parameters,
                'upstream_account_id': tenant.account_id,
                'upstream_service_id': tenant.service_id,
            })
        except Exception:
            await self._rollback_tenant(instance_id, tenant)
            raise

    async def _rollback_tenant(self, instance_id: str, tenant: UpstreamTenant) -> None:
        logger.warning(
            f"Instance record not stored; removing upstream account {tenant.account_id}",
            extra={'instance_id': instance_id}
        )
        try:
            await self.upstream.delete_service_and_account(tenant.account_id, tenant.service_id)
        except BrokerError as e:
            logger.error(f"Failed to roll back upstream tenant: {e}", extra={'instance_id': instance_id})

    @_tracked('provision')
    async def provision(self, instance_id: str, request: ProvisionRequest,
                        accepts_incomplete: bool = False) -> BrokerOutcome:
        """Create a service instance (synchronously or as a detached job)."""
        if not request.service_id or not request.plan_id:
            raise ValidationError("service_id and plan_id are required")

        async with self._locks.acquire(instance_id):
            existing = await self.store.get_instance(instance_id)
            if existing is not None:
                if existing.service_id == request.service_id and existing.plan_id == request.plan_id:
                    logger.info("Instance already provisioned", extra={'instance_id': instance_id})
                    return BrokerOutcome(
                        OutcomeStatus.EXISTING,
                        ProvisionResponse(dashboard_url=self.dashboard_url(instance_id))
                    )
                raise ConflictError(
                    "Instance already exists with different attributes",
                    error_code=ErrorCode.INSTANCE_CONFLICT,
                    details={'instance_id': instance_id}
                )

            await self._ensure_no_pending(instance_id)

            if self.config.enable_async:
                if not accepts_incomplete:
                    raise AsyncRequiredError()
                operation_id = await self._start_operation(
                    OperationType.PROVISION, instance_id, "Provisioning service instance"
                )
                self.scheduler.submit(operation_id, self._finish_job(
                    OperationType.PROVISION, instance_id, operation_id,
                    self._create_instance(instance_id, request),
                    "Service instance provisioned"
                ))
                return BrokerOutcome(OutcomeStatus.ACCEPTED, ProvisionResponse(operation=operation_id))

            await self._create_instance(instance_id, request)
            logger.info("Provisioned service instance", extra={'instance_id': instance_id})
            return BrokerOutcome(
                OutcomeStatus.CREATED,
                ProvisionResponse(dashboard_url=self.dashboard_url(instance_id))
            )

    # Update

    @_tracked('update')
    async def update(self, instance_id: str, request: UpdateRequest) -> BrokerOutcome:
        """Apply a plan change upstream (if any) and merge context/parameters locally."""
        async with self._locks.acquire(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)

            await self._ensure_no_pending(instance_id)

            partial: Dict[str, Any] = {}
            if request.plan_id and request.plan_id != instance.plan_id:
                if not instance.upstream_service_id:
                    raise BrokerError(
                        "Missing upstream service id on instance record",
                        details={'instance_id': instance_id}
                    )
                await self.upstream.update_plan(
                    instance.upstream_service_id, request.plan_id, request.parameters or {}
                )
                partial['plan_id'] = request.plan_id
                logger.info(
                    f"Changed plan {instance.plan_id} -> {request.plan_id}",
                    extra={'instance_id': instance_id}
                )

            if request.context is not None:
                partial['context'] = request.context
            if request.parameters:
                partial['parameters'] = request.parameters

            if partial:
                await self.store.update_instance(instance_id, partial)

            return BrokerOutcome(OutcomeStatus.COMPLETED, UpdateResponse())

    # Deprovision

    async def _delete_instance(self, instance: ServiceInstance) -> None:
        await self.upstream.delete_service_and_account(
            instance.upstream_account_id, instance.upstream_service_id, missing_ok=True
        )
        await self.store.delete_instance(instance.instance_id)

    @_tracked('deprovision')
    async def deprovision(self, instance_id: str, service_id: Optional[str], plan_id: Optional[str],
                          accepts_incomplete: bool = False) -> BrokerOutcome:
        """Delete a service instance (synchronously or as a detached job)."""
        if not service_id or not plan_id:
            raise ValidationError("service_id and plan_id are required query parameters")

        async with self._locks.acquire(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise GoneError(
                    f"Service instance '{instance_id}' does not exist",
                    error_code=ErrorCode.INSTANCE_GONE
                )
            if instance.service_id != service_id or instance.plan_id != plan_id:
                raise ConflictError(
                    "Mismatched service_id/plan_id for this instance",
                    error_code=ErrorCode.INSTANCE_CONFLICT
                )

            await self._ensure_no_pending(instance_id)

            if self.config.enable_async:
                if not accepts_incomplete:
                    raise AsyncRequiredError()
                operation_id = await self._start_operation(
                    OperationType.DEPROVISION, instance_id, "Deprovisioning service instance"
                )
                self.scheduler.submit(operation_id, self._finish_job(
                    OperationType.DEPROVISION, instance_id, operation_id,
                    self._delete_instance(instance),
                    "Service instance deprovisioned"
                ))
                return BrokerOutcome(OutcomeStatus.ACCEPTED, DeprovisionResponse(operation=operation_id))

            await self._delete_instance(instance)
            logger.info("Deprovisioned service instance", extra={'instance_id': instance_id})
            return BrokerOutcome(OutcomeStatus.COMPLETED, DeprovisionResponse())

    # Last operation

    @_tracked('last_operation')
    async def last_operation(self, instance_id: str, operation_id: Optional[str]) -> BrokerOutcome:
        """Report the state of an asynchronous operation."""
        if not operation_id:
            raise ValidationError("operation query parameter is required")

        operation = await self.store.get_operation(operation_id)
        if operation is None or operation.instance_id != instance_id:
            raise OperationNotFoundError(operation_id)

        operation = await self._expire_if_stale(operation)
        return BrokerOutcome(
            OutcomeStatus.COMPLETED,
            LastOperationResponse(state=operation.state, description=operation.description)
        )

    # Bind

    @_tracked('bind')
    async def bind(self, instance_id: str, binding_id: str, request: BindRequest) -> BrokerOutcome:
        """Create an upstream contact user and record it as a binding."""
        if not request.service_id or not request.plan_id:
            raise ValidationError("service_id and plan_id are required")

        extra = {'instance_id': instance_id, 'binding_id': binding_id}
        async with self._locks.acquire(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)

            existing = await self.store.get_binding(binding_id)
            if existing is not None:
                if (existing.instance_id == instance_id
                        and existing.service_id == request.service_id
                        and existing.plan_id == request.plan_id):
                    return BrokerOutcome(
                        OutcomeStatus.EXISTING, BindResponse(credentials=existing.credentials)
                    )
                raise ConflictError(
                    "Binding already exists with different attributes",
                    error_code=ErrorCode.BINDING_CONFLICT
                )

            email = request.parameters.get('email')
            if not email or not isinstance(email, str):
                raise RequiresAppError()

            await self._ensure_no_pending(instance_id)

            if not instance.upstream_account_id:
                raise BrokerError(
                    "Missing upstream account id on instance record",
                    details={'instance_id': instance_id}
                )

            profile = {k: v for k, v in request.parameters.items() if k != 'email'}
            user = await self.upstream.create_contact_user(instance.upstream_account_id, email, profile)
            credentials = BindingCredentials(
                user_id=user['id'], email=user['email'], account_id=user['account_id']
            )

            try:
                await self.store.create_binding(instance_id, binding_id, {
                    'service_id': request.service_id,
                    'plan_id': request.plan_id,
                    'bind_resource': request.bind_resource,
                    'parameters': request.parameters,
                    'credentials': credentials,
                    'upstream_user_id': credentials.user_id,
                })
            except Exception:
                logger.warning("Binding record not stored; removing contact user", extra=extra)
                try:
                    await self.upstream.delete_contact_user(credentials.user_id, missing_ok=True)
                except BrokerError as e:
                    logger.error(f"Failed to remove contact user {credentials.user_id}: {e}", extra=extra)
                raise

            logger.info(f"Created binding with contact user {credentials.user_id}", extra=extra)
            return BrokerOutcome(OutcomeStatus.CREATED, BindResponse(credentials=credentials))

    # Unbind

    @_tracked('unbind')
    async def unbind(self, instance_id: str, binding_id: str,
                     service_id: Optional[str], plan_id: Optional[str]) -> BrokerOutcome:
        """Delete the upstream contact user, then the local binding."""
        if not service_id or not plan_id:
            raise ValidationError("service_id and plan_id are required query parameters")

        async with self._locks.acquire(instance_id):
            binding = await self.store.get_binding(binding_id)
            if binding is None or binding.instance_id != instance_id:
                raise GoneError(
                    f"Service binding '{binding_id}' does not exist",
                    error_code=ErrorCode.BINDING_GONE
                )
            if binding.service_id != service_id or binding.plan_id != plan_id:
                raise ConflictError(
                    "Mismatched service_id/plan_id for this binding",
                    error_code=ErrorCode.BINDING_CONFLICT
                )

            if binding.upstream_user_id:
                await self.upstream.delete_contact_user(binding.upstream_user_id, missing_ok=True)
            await self.store.delete_binding(binding_id)

            logger.info("Deleted binding", extra={'instance_id': instance_id, 'binding_id': binding_id})
            return BrokerOutcome(OutcomeStatus.COMPLETED, UnbindResponse())

    async def refresh_gauges(self) -> None:
        """Publish instance and binding counts."""
        stats = await self.store.get_stats()
        self.metrics.set_gauge('osb_active_service_instances', stats['instances'])
        self.metrics.set_gauge('osb_active_service_bindings', stats['bindings'])
