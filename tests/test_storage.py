"""Tests for storage layer."""

import copy
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from urllib.parse import unquote

from cap_broker.config import Config, DatabaseConfig
from cap_broker.exceptions import (
    AlreadyExistsError, ConfigurationError, InstanceNotFoundError,
    OperationNotFoundError, StorageError
)
from cap_broker.models.state import BindingCredentials, OperationState, OperationType
from cap_broker.storage.base import StateStore
from cap_broker.storage.cloudant_store import CloudantStateStore
from cap_broker.storage.factory import StorageFactory
from cap_broker.storage.memory_store import MemoryStateStore


class FakeCouch:
    """Just enough of the CouchDB HTTP API to back CloudantStateStore."""

    def __init__(self, database: str = "cap-osb"):
        self.database = database
        self.created = False
        self.docs = {}
        self.requests = []
        self._rev_counter = 0

    def _next_rev(self) -> str:
        self._rev_counter += 1
        return f"{self._rev_counter}-fake"

    @staticmethod
    def _matches(doc, selector) -> bool:
        for key, expected in selector.items():
            if isinstance(expected, dict) and '$ne' in expected:
                if doc.get(key) == expected['$ne']:
                    return False
            elif doc.get(key) != expected:
                return False
        return True

    async def send(self, method, path, params=None, json=None):
        self.requests.append((method, path))
        prefix = f"/{self.database}"

        if path == prefix:
            if method == 'PUT':
                if self.created:
                    return 412, {'error': 'file_exists'}
                self.created = True
                return 201, {'ok': True}
            if method == 'GET':
                return (200, {'db_name': self.database}) if self.created else (404, {'error': 'not_found'})

        if path == f"{prefix}/_index":
            return 200, {'result': 'created'}

        if path == f"{prefix}/_find":
            matches = [
                copy.deepcopy(doc) for _, doc in sorted(self.docs.items())
                if self._matches(doc, json['selector'])
            ]
            start = int(json.get('bookmark') or 0)
            end = start + json['limit']
            return 200, {'docs': matches[start:end], 'bookmark': str(end)}

        if path == f"{prefix}/_bulk_docs":
            results = []
            for doc in json['docs']:
                stored = self.docs.get(doc['_id'])
                if stored is not None and stored['_rev'] == doc['_rev']:
                    del self.docs[doc['_id']]
                    results.append({'id': doc['_id'], 'ok': True})
                else:
                    results.append({'id': doc['_id'], 'error': 'conflict'})
            return 201, results

        doc_id = unquote(path[len(prefix) + 1:])
        stored = self.docs.get(doc_id)

        if method == 'GET':
            return (200, copy.deepcopy(stored)) if stored else (404, {'error': 'not_found'})

        if method == 'PUT':
            if (stored is None and json.get('_rev')) or (stored and stored['_rev'] != json.get('_rev')):
                return 409, {'error': 'conflict'}
            doc = copy.deepcopy(json)
            doc['_rev'] = self._next_rev()
            self.docs[doc_id] = doc
            return 201, {'ok': True, 'id': doc_id, 'rev': doc['_rev']}

        if method == 'DELETE':
            if stored is None:
                return 404, {'error': 'not_found'}
            if stored['_rev'] != params['rev']:
                return 409, {'error': 'conflict'}
            del self.docs[doc_id]
            return 200, {'ok': True}

        return 400, {'error': 'bad_request'}


def instance_data(**overrides):
    data = {
        'service_id': "svc",
        'plan_id': "standard",
        'context': {'platform': "ibmcloud"},
        'parameters': {'customerName': "Acme"},
        'upstream_account_id': "acc-1",
        'upstream_service_id': "svc-1",
    }
    data.update(overrides)
    return data


def binding_data(**overrides):
    data = {
        'service_id': "svc",
        'plan_id': "standard",
        'parameters': {'email': "ops@example.com"},
        'credentials': BindingCredentials(user_id="user-1", email="ops@example.com", account_id="acc-1"),
        'upstream_user_id': "user-1",
    }
    data.update(overrides)
    return data


@pytest.fixture
def fake_couch():
    return FakeCouch()


@pytest.fixture(params=['memory', 'cloudant'])
async def store(request, fake_couch):
    """Each store backend, initialized and empty."""
    if request.param == 'memory':
        backend = MemoryStateStore()
    else:
        backend = CloudantStateStore("http://couch.test", retries=0)
        backend._send = fake_couch.send
    await backend.initialize()
    yield backend
    await backend.close()


class TestStateStoreContract:
    """Behaviour every state store backend must share."""

    @pytest.mark.asyncio
    async def test_create_and_get_instance(self, store):
        created = await store.create_instance("i1", instance_data())
        fetched = await store.get_instance("i1")

        assert created.instance_id == "i1"
        assert fetched.plan_id == "standard"
        assert fetched.upstream_account_id == "acc-1"
        assert fetched.parameters == {'customerName': "Acme"}

    @pytest.mark.asyncio
    async def test_create_duplicate_instance(self, store):
        await store.create_instance("i1", instance_data())

        with pytest.raises(AlreadyExistsError):
            await store.create_instance("i1", instance_data(plan_id="enterprise"))

        assert (await store.get_instance("i1")).plan_id == "standard"

    @pytest.mark.asyncio
    async def test_get_missing_instance(self, store):
        assert await store.get_instance("missing") is None

    @pytest.mark.asyncio
    async def test_update_instance_merges_parameters(self, store):
        await store.create_instance("i1", instance_data(parameters={'a': 1, 'b': 2}))

        updated = await store.update_instance("i1", {'plan_id': "enterprise", 'parameters': {'b': 3, 'c': 4}})

        assert updated.plan_id == "enterprise"
        assert updated.parameters == {'a': 1, 'b': 3, 'c': 4}
        assert (await store.get_instance("i1")).parameters == {'a': 1, 'b': 3, 'c': 4}

    @pytest.mark.asyncio
    async def test_update_instance_keeps_identity(self, store):
        created = await store.create_instance("i1", instance_data())

        updated = await store.update_instance("i1", {'instance_id': "other", 'context': {'x': 1}})

        assert updated.instance_id == "i1"
        assert updated.context == {'x': 1}
        assert updated.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_update_missing_instance(self, store):
        with pytest.raises(InstanceNotFoundError):
            await store.update_instance("missing", {'plan_id': "enterprise"})

    @pytest.mark.asyncio
    async def test_binding_lifecycle(self, store):
        await store.create_instance("i1", instance_data())

        binding = await store.create_binding("i1", "b1", binding_data())
        assert binding.credentials.user_id == "user-1"

        assert (await store.get_binding("b1")).instance_id == "i1"
        assert [b.binding_id for b in await store.list_bindings_by_instance("i1")] == ["b1"]

        assert await store.delete_binding("b1") is True
        assert await store.delete_binding("b1") is False
        assert await store.get_binding("b1") is None

    @pytest.mark.asyncio
    async def test_binding_requires_instance(self, store):
        with pytest.raises(InstanceNotFoundError):
            await store.create_binding("missing", "b1", binding_data())

    @pytest.mark.asyncio
    async def test_duplicate_binding(self, store):
        await store.create_instance("i1", instance_data())
        await store.create_binding("i1", "b1", binding_data())

        with pytest.raises(AlreadyExistsError):
            await store.create_binding("i1", "b1", binding_data())

    @pytest.mark.asyncio
    async def test_pending_operation_tracking(self, store):
        assert await store.has_pending_operation("i1") is False

        await store.set_operation("i1", "op-1", {
            'type': OperationType.PROVISION, 'description': "Provisioning service instance"
        })
        assert await store.has_pending_operation("i1") is True

        updated = await store.update_operation("op-1", OperationState.SUCCEEDED)
        assert updated.state == OperationState.SUCCEEDED
        assert updated.description == "Provisioning service instance"
        assert await store.has_pending_operation("i1") is False

    @pytest.mark.asyncio
    async def test_update_operation_description(self, store):
        await store.set_operation("i1", "op-1", {'type': OperationType.PROVISION})

        failed = await store.update_operation("op-1", OperationState.FAILED, "Upstream unavailable")

        assert failed.description == "Upstream unavailable"
        assert (await store.get_operation("op-1")).state == OperationState.FAILED

    @pytest.mark.asyncio
    async def test_update_missing_operation(self, store):
        with pytest.raises(OperationNotFoundError):
            await store.update_operation("missing", OperationState.FAILED)

    @pytest.mark.asyncio
    async def test_delete_operation_clears_pending(self, store):
        await store.set_operation("i1", "op-1", {'type': OperationType.PROVISION})

        assert await store.delete_operation("op-1") is True
        assert await store.delete_operation("op-1") is False
        assert await store.has_pending_operation("i1") is False

    @pytest.mark.asyncio
    async def test_delete_instance_cascades(self, store):
        await store.create_instance("i1", instance_data())
        await store.create_instance("i2", instance_data())
        await store.create_binding("i1", "b1", binding_data())
        await store.create_binding("i2", "b2", binding_data())
        await store.set_operation("i1", "op-done", {
            'type': OperationType.PROVISION, 'state': OperationState.SUCCEEDED
        })
        await store.set_operation("i1", "op-running", {'type': OperationType.DEPROVISION})

        assert await store.delete_instance("i1") is True

        assert await store.get_instance("i1") is None
        assert await store.get_binding("b1") is None
        assert await store.get_operation("op-done") is None
        # In-progress operations stay pollable
        assert (await store.get_operation("op-running")).state == OperationState.IN_PROGRESS
        assert await store.get_binding("b2") is not None

    @pytest.mark.asyncio
    async def test_delete_missing_instance(self, store):
        assert await store.delete_instance("missing") is False

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.create_instance("i1", instance_data())
        await store.create_instance("i2", instance_data())
        await store.create_binding("i1", "b1", binding_data())

        assert await store.get_stats() == {'instances': 2, 'bindings': 1}

    @pytest.mark.asyncio
    async def test_get_pending_operations(self, store):
        await store.set_operation("i1", "op-1", {'type': OperationType.PROVISION})
        await store.set_operation("i1", "op-2", {
            'type': OperationType.PROVISION, 'state': OperationState.FAILED
        })

        pending = await store.get_pending_operations("i1")

        assert [op.operation_id for op in pending] == ["op-1"]


class TestMemoryStateStore:
    """Memory-store specifics."""

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self, memory_store):
        instance = await memory_store.create_instance("i1", instance_data())
        instance.parameters['injected'] = True

        fetched = await memory_store.get_instance("i1")
        fetched.plan_id = "changed"

        stored = await memory_store.get_instance("i1")
        assert 'injected' not in stored.parameters
        assert stored.plan_id == "standard"

    def test_no_operations_outside_store_contract(self):
        public = {name for name in dir(MemoryStateStore) if not name.startswith('_')}

        assert public == {name for name in dir(StateStore) if not name.startswith('_')}

    @pytest.mark.asyncio
    async def test_operation_created_at_can_be_backdated(self, memory_store):
        operation = await memory_store.set_operation("i1", "op-1", {'type': OperationType.PROVISION})
        old = operation.created_at - timedelta(hours=2)

        await memory_store.set_operation("i1", "op-1", {'type': OperationType.PROVISION, 'created_at': old})

        assert (await memory_store.get_operation("op-1")).created_at == old


class TestCloudantStateStore:
    """Cloudant-store specifics against a fake CouchDB."""

    @pytest.fixture
    async def cloudant(self, fake_couch):
        store = CloudantStateStore("http://couch.test/", retries=2, retry_base_delay=0.0, retry_max_delay=0.0)
        store._send = fake_couch.send
        await store.initialize()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, cloudant, fake_couch):
        await cloudant.initialize()

        assert fake_couch.created is True
        assert ('POST', "/cap-osb/_index") in fake_couch.requests

    @pytest.mark.asyncio
    async def test_documents_are_typed_and_keyed(self, cloudant, fake_couch):
        await cloudant.create_instance("i1", instance_data())
        await cloudant.set_operation("i1", "op-1", {'type': OperationType.PROVISION})

        instance_doc = fake_couch.docs["instance:i1"]
        operation_doc = fake_couch.docs["operation:op-1"]
        assert instance_doc['doc_type'] == "instance"
        assert operation_doc['doc_type'] == "operation"
        assert operation_doc['type'] == "provision"
        assert operation_doc['state'] == "in progress"

    @pytest.mark.asyncio
    async def test_document_ids_are_quoted(self, cloudant, fake_couch):
        await cloudant.create_instance("a/b", instance_data())

        assert ('PUT', "/cap-osb/instance%3Aa%2Fb") in fake_couch.requests
        assert (await cloudant.get_instance("a/b")).instance_id == "a/b"

    @pytest.mark.asyncio
    async def test_update_retries_revision_conflict(self, cloudant, fake_couch):
        await cloudant.create_instance("i1", instance_data())
        original_send = fake_couch.send
        conflicts = {'remaining': 1}

        async def conflicting_send(method, path, params=None, json=None):
            if method == 'PUT' and path.endswith("instance%3Ai1") and conflicts['remaining']:
                conflicts['remaining'] -= 1
                return 409, {'error': 'conflict'}
            return await original_send(method, path, params=params, json=json)

        cloudant._send = conflicting_send
        updated = await cloudant.update_instance("i1", {'plan_id': "enterprise"})

        assert updated.plan_id == "enterprise"
        assert fake_couch.docs["instance:i1"]['plan_id'] == "enterprise"

    @pytest.mark.asyncio
    async def test_find_pages_with_bookmark(self, cloudant, fake_couch, monkeypatch):
        monkeypatch.setattr('cap_broker.storage.cloudant_store.FIND_PAGE_SIZE', 2)
        for i in range(5):
            await cloudant.create_instance(f"i{i}", instance_data())

        instances = await cloudant.list_instances()

        assert sorted(i.instance_id for i in instances) == [f"i{i}" for i in range(5)]
        assert fake_couch.requests.count(('POST', "/cap-osb/_find")) == 3

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, cloudant, fake_couch):
        await cloudant.create_instance("i1", instance_data())
        original_send = fake_couch.send
        failures = {'remaining': 2}

        async def flaky_send(method, path, params=None, json=None):
            if failures['remaining']:
                failures['remaining'] -= 1
                return 503, {'error': 'unavailable'}
            return await original_send(method, path, params=params, json=json)

        cloudant._send = flaky_send

        assert (await cloudant.get_instance("i1")).instance_id == "i1"

    @pytest.mark.asyncio
    async def test_persistent_errors_raise_storage_error(self, cloudant):
        cloudant._send = AsyncMock(return_value=(500, {'reason': 'boom'}))

        with pytest.raises(StorageError) as exc_info:
            await cloudant.get_instance("i1")

        assert exc_info.value.transient is True
        assert cloudant._send.await_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_not_retried(self, cloudant):
        cloudant._send = AsyncMock(return_value=(400, {'reason': 'bad selector'}))

        with pytest.raises(StorageError) as exc_info:
            await cloudant.list_instances()

        assert "bad selector" in exc_info.value.message
        assert cloudant._send.await_count == 1

    @pytest.mark.asyncio
    async def test_ping(self, cloudant, fake_couch):
        assert await cloudant.ping() is True

        fake_couch.created = False
        assert await cloudant.ping() is False


class TestStorageFactory:
    """Test storage factory."""

    def test_create_memory_store(self):
        config = Config()
        config.database = DatabaseConfig(type="memory")

        assert isinstance(StorageFactory.create_store(config), MemoryStateStore)

    def test_create_cloudant_store(self):
        config = Config()
        config.database = DatabaseConfig(
            type="cloudant", cloudant_url="https://acct.cloudant.example", cloudant_database="osb"
        )

        store = StorageFactory.create_store(config)

        assert isinstance(store, CloudantStateStore)
        assert store.database == "osb"

    def test_cloudant_requires_url(self):
        config = Config()
        config.database = DatabaseConfig(type="cloudant")

        with pytest.raises(ConfigurationError):
            StorageFactory.create_store(config)

    def test_unknown_backend(self):
        config = Config()
        config.database = DatabaseConfig(type="postgres")

        with pytest.raises(ConfigurationError):
            StorageFactory.create_store(config)

    @pytest.mark.asyncio
    async def test_create_initialized_store(self):
        config = Config()
        config.database = DatabaseConfig(type="memory")

        store = await StorageFactory.create_initialized_store(config)

        assert await store.ping() is True
