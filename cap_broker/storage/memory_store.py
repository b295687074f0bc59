"""In-process volatile implementation of broker state storage."""

import logging
from typing import Any, Dict, List, Optional, Set

from cap_broker.exceptions import (
    AlreadyExistsError, BindingNotFoundError, ErrorCode,
    InstanceNotFoundError, OperationNotFoundError
)
from cap_broker.models.state import (
    Operation, OperationState, ServiceBinding, ServiceInstance, utcnow
)
from cap_broker.storage.base import StateStore, merge_partial

logger = logging.getLogger(__name__)


class MemoryStateStore(StateStore):
    """Dictionary-backed store; all data is lost on restart.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(self):
        self._instances: Dict[str, ServiceInstance] = {}
        self._bindings: Dict[str, ServiceBinding] = {}
        self._operations: Dict[str, Operation] = {}
        self._pending: Set[str] = set()

    async def initialize(self) -> None:
        logger.info("In-memory state store initialized")

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    def _recompute_pending(self, instance_id: str) -> None:
        if any(
            op.instance_id == instance_id and op.state == OperationState.IN_PROGRESS
            for op in self._operations.values()
        ):
            self._pending.add(instance_id)
        else:
            self._pending.discard(instance_id)

    # Service instances

    async def create_instance(self, instance_id: str, data: Dict[str, Any]) -> ServiceInstance:
        if instance_id in self._instances:
            raise AlreadyExistsError("Service instance", instance_id, ErrorCode.INSTANCE_ALREADY_EXISTS)

        now = utcnow()
        instance = ServiceInstance(
            **{**data, 'instance_id': instance_id, 'created_at': now, 'updated_at': now}
        )
        self._instances[instance_id] = instance
        logger.info(f"Created service instance {instance_id}", extra={'instance_id': instance_id})
        return instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(self) -> List[ServiceInstance]:
        return [instance.model_copy(deep=True) for instance in self._instances.values()]

    async def update_instance(self, instance_id: str, partial: Dict[str, Any]) -> ServiceInstance:
        current = self._instances.get(instance_id)
        if current is None:
            raise InstanceNotFoundError(instance_id)

        merged = merge_partial(
            current.model_dump(), partial, immutable=('instance_id', 'created_at')
        )
        merged['updated_at'] = utcnow()
        instance = ServiceInstance(**merged)
        self._instances[instance_id] = instance
        return instance.model_copy(deep=True)

    async def delete_instance(self, instance_id: str) -> bool:
        if self._instances.pop(instance_id, None) is None:
            return False

        for binding_id in [b.binding_id for b in self._bindings.values() if b.instance_id == instance_id]:
            del self._bindings[binding_id]

        for operation_id in [
            op.operation_id for op in self._operations.values()
            if op.instance_id == instance_id and op.is_terminal
        ]:
            del self._operations[operation_id]

        self._recompute_pending(instance_id)
        logger.info(f"Deleted service instance {instance_id}", extra={'instance_id': instance_id})
        return True

    # Service bindings

    async def create_binding(
        self, instance_id: str, binding_id: str, data: Dict[str, Any]
    ) -> ServiceBinding:
        if binding_id in self._bindings:
            raise AlreadyExistsError("Service binding", binding_id, ErrorCode.BINDING_ALREADY_EXISTS)
        if instance_id not in self._instances:
            raise InstanceNotFoundError(instance_id)

        binding = ServiceBinding(
            **{**data, 'instance_id': instance_id, 'binding_id': binding_id, 'created_at': utcnow()}
        )
        self._bindings[binding_id] = binding
        return binding.model_copy(deep=True)

    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        binding = self._bindings.get(binding_id)
        return binding.model_copy(deep=True) if binding else None

    async def list_bindings(self) -> List[ServiceBinding]:
        return [binding.model_copy(deep=True) for binding in self._bindings.values()]

    async def list_bindings_by_instance(self, instance_id: str) -> List[ServiceBinding]:
        return [
            binding.model_copy(deep=True) for binding in self._bindings.values()
            if binding.instance_id == instance_id
        ]

    async def update_binding(self, binding_id: str, partial: Dict[str, Any]) -> ServiceBinding:
        current = self._bindings.get(binding_id)
        if current is None:
            raise BindingNotFoundError(binding_id)

        merged = merge_partial(
            current.model_dump(), partial,
            immutable=('instance_id', 'binding_id', 'created_at')
        )
        binding = ServiceBinding(**merged)
        self._bindings[binding_id] = binding
        return binding.model_copy(deep=True)

    async def delete_binding(self, binding_id: str) -> bool:
        return self._bindings.pop(binding_id, None) is not None

    # Operations

    async def set_operation(
        self, instance_id: str, operation_id: str, data: Dict[str, Any]
    ) -> Operation:
        now = utcnow()
        operation = Operation(**{
            'created_at': now,
            'updated_at': now,
            **data,
            'operation_id': operation_id,
            'instance_id': instance_id,
        })
        self._operations[operation_id] = operation
        if operation.state == OperationState.IN_PROGRESS:
            self._pending.add(instance_id)
        return operation.model_copy(deep=True)

    async def get_operation(self, operation_id: str) -> Optional[Operation]:
        operation = self._operations.get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    async def list_operations_by_instance(self, instance_id: str) -> List[Operation]:
        return [
            op.model_copy(deep=True) for op in self._operations.values()
            if op.instance_id == instance_id
        ]

    async def update_operation(
        self,
        operation_id: str,
        state: OperationState,
        description: Optional[str] = None
    ) -> Operation:
        current = self._operations.get(operation_id)
        if current is None:
            raise OperationNotFoundError(operation_id)

        operation = current.model_copy(update={
            'state': OperationState(state),
            'description': description if description is not None else current.description,
            'updated_at': utcnow(),
        })
        self._operations[operation_id] = operation
        self._recompute_pending(operation.instance_id)
        return operation.model_copy(deep=True)

    async def delete_operation(self, operation_id: str) -> bool:
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return False
        self._recompute_pending(operation.instance_id)
        return True

    async def has_pending_operation(self, instance_id: str) -> bool:
        return instance_id in self._pending
