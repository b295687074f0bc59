"""Abstract base class for broker state storage."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from cap_broker.models.state import (
    Operation, OperationState, ServiceBinding, ServiceInstance
)


class StateStore(ABC):
    """Abstract interface for instance, binding and operation storage.

    Implementations own the lifetime of every record. Mutations are atomic
    with respect to other callers on the same event loop: no reader observes
    a partially-updated record. Returned models are copies; mutating them
    does not affect stored state.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backend is reachable."""
        pass

    # Service instances

    @abstractmethod
    async def create_instance(self, instance_id: str, data: Dict[str, Any]) -> ServiceInstance:
        """Create a service instance.

        Raises:
            AlreadyExistsError: if ``instance_id`` is taken
        """
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        """Retrieve service instance by ID."""
        pass

    @abstractmethod
    async def list_instances(self) -> List[ServiceInstance]:
        pass

    @abstractmethod
    async def update_instance(self, instance_id: str, partial: Dict[str, Any]) -> ServiceInstance:
        """Merge ``partial`` into an instance.

        Top-level keys are replaced; ``parameters`` is merged key by key.

        Raises:
            InstanceNotFoundError: if the instance does not exist
        """
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> bool:
        """Delete an instance, its bindings and its terminal operations.

        Returns whether the instance existed. Operations still in progress
        are kept so they remain pollable.
        """
        pass

    # Service bindings

    @abstractmethod
    async def create_binding(
        self, instance_id: str, binding_id: str, data: Dict[str, Any]
    ) -> ServiceBinding:
        """Create a binding under an existing instance.

        Raises:
            AlreadyExistsError: if ``binding_id`` is taken
            InstanceNotFoundError: if the owning instance does not exist
        """
        pass

    @abstractmethod
    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        pass

    @abstractmethod
    async def list_bindings(self) -> List[ServiceBinding]:
        pass

    @abstractmethod
    async def list_bindings_by_instance(self, instance_id: str) -> List[ServiceBinding]:
        pass

    @abstractmethod
    async def update_binding(self, binding_id: str, partial: Dict[str, Any]) -> ServiceBinding:
        """Merge ``partial`` into a binding.

        Raises:
            BindingNotFoundError: if the binding does not exist
        """
        pass

    @abstractmethod
    async def delete_binding(self, binding_id: str) -> bool:
        """Delete a binding, returning whether it existed."""
        pass

    # Operations

    @abstractmethod
    async def set_operation(
        self, instance_id: str, operation_id: str, data: Dict[str, Any]
    ) -> Operation:
        """Register an operation for an instance."""
        pass

    @abstractmethod
    async def get_operation(self, operation_id: str) -> Optional[Operation]:
        pass

    @abstractmethod
    async def list_operations_by_instance(self, instance_id: str) -> List[Operation]:
        pass

    @abstractmethod
    async def update_operation(
        self,
        operation_id: str,
        state: OperationState,
        description: Optional[str] = None
    ) -> Operation:
        """Move an operation to ``state``.

        Raises:
            OperationNotFoundError: if the operation does not exist
        """
        pass

    @abstractmethod
    async def delete_operation(self, operation_id: str) -> bool:
        pass

    @abstractmethod
    async def has_pending_operation(self, instance_id: str) -> bool:
        """True iff an operation for the instance is in progress."""
        pass

    async def get_pending_operations(self, instance_id: str) -> List[Operation]:
        """Operations for the instance that are still in progress."""
        return [
            op for op in await self.list_operations_by_instance(instance_id)
            if op.state == OperationState.IN_PROGRESS
        ]

    async def get_stats(self) -> Dict[str, int]:
        """Record counts, used for gauges and diagnostics."""
        return {
            'instances': len(await self.list_instances()),
            'bindings': len(await self.list_bindings()),
        }


def merge_partial(current: Dict[str, Any], partial: Dict[str, Any], immutable=()) -> Dict[str, Any]:
    """Shallow-merge ``partial`` into ``current``; ``parameters`` merges key-wise."""
    merged = dict(current)
    for key, value in partial.items():
        if key in immutable:
            continue
        if key == 'parameters':
            merged['parameters'] = {**(current.get('parameters') or {}), **(value or {})}
        else:
            merged[key] = value
    return merged
