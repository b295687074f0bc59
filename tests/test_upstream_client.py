"""Tests for the upstream provisioning API client."""

import asyncio
import pytest
from unittest.mock import AsyncMock

import aiohttp

from cap_broker.clients.upstream_client import (
    ENTITY_PATH, UpstreamClient, build_account_payload, build_contact_payload,
    build_service_payload, is_retryable
)
from cap_broker.config import UpstreamConfig
from cap_broker.exceptions import ErrorCode, UpstreamError
from cap_broker.monitoring.metrics import MetricsCollector


def make_client(responses, retries=2, metrics=None):
    """Client whose transport returns ``responses`` in order."""
    client = UpstreamClient(
        "https://upstream.example.com/",
        api_token="token",
        retries=retries,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        metrics=metrics or MetricsCollector()
    )
    client._send = AsyncMock(side_effect=responses)
    return client


class TestPayloads:
    """Test upstream payload shaping."""

    def test_account_payload_defaults(self):
        payload = build_account_payload("i1", {})

        assert payload['name'] == "OSB-Instance-i1"
        assert payload['type'] == "STANDARD"

    def test_account_payload_customer_name(self):
        assert build_account_payload("i1", {'customerName': "Acme"})['name'] == "Acme"

    def test_service_payload(self):
        payload = build_service_payload("acc-1", {'bandwidthLimit': 50, 'popRegions': ["Europe"]})

        assert payload['accountId'] == "acc-1"
        assert payload['type'] == "CWAF"
        assert payload['bandwidthLimit'] == 50
        assert payload['applicationLimit'] == 1
        assert payload['popRegions'] == ["Europe"]
        assert payload['addons']['cdn'] == {'enabled': False}

    def test_service_payload_keeps_falsy_values(self):
        payload = build_service_payload("acc-1", {'applicationLimit': 0})

        assert payload['applicationLimit'] == 0

    def test_contact_payload(self):
        payload = build_contact_payload("acc-1", "ops@example.com", {'jobTitle': "SRE", 'ignored': 1})

        assert payload['userType'] == "CONTACT"
        assert payload['firstName'] == "OSB"
        assert payload['jobTitle'] == "SRE"
        assert 'ignored' not in payload


class TestErrorMapping:
    """Upstream statuses map onto broker statuses."""

    @pytest.mark.parametrize("upstream_status,broker_status", [
        (400, 400), (401, 502), (403, 502), (404, 410), (409, 409), (422, 422), (418, 502),
    ])
    @pytest.mark.asyncio
    async def test_status_mapping(self, upstream_status, broker_status):
        client = make_client([(upstream_status, {'message': "upstream says no"})], retries=0)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account({'name': "x"})

        assert exc_info.value.http_status == broker_status
        assert exc_info.value.upstream_status == upstream_status

    @pytest.mark.asyncio
    async def test_passthrough_message_for_client_errors(self):
        client = make_client([(409, {'message': "Account name taken"})], retries=0)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account({'name': "x"})

        assert exc_info.value.message == "Account name taken"

    @pytest.mark.asyncio
    async def test_auth_failures_do_not_leak_upstream_message(self):
        client = make_client([(401, {'message': "token expired for user admin"})], retries=0)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account({'name': "x"})

        assert "admin" not in exc_info.value.message
        assert exc_info.value.error_code == ErrorCode.UPSTREAM_AUTH_FAILED

    @pytest.mark.asyncio
    async def test_no_response(self):
        client = make_client(aiohttp.ClientConnectionError("refused"), retries=0)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account({'name': "x"})

        assert exc_info.value.http_status == 502
        assert exc_info.value.upstream_status is None
        assert exc_info.value.error_code == ErrorCode.UPSTREAM_UNAVAILABLE

    def test_retry_classification(self):
        assert is_retryable(UpstreamError.no_response())
        assert is_retryable(UpstreamError.from_status(503))
        assert is_retryable(UpstreamError.from_status(429))
        assert is_retryable(UpstreamError.from_status(408))
        assert not is_retryable(UpstreamError.from_status(400))
        assert not is_retryable(UpstreamError.from_status(404))
        assert not is_retryable(ValueError("boom"))


class TestRetries:
    """Test retry behaviour."""

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        client = make_client([(503, None), (502, None), (200, {'id': 7})])

        result = await client.create_account({'name': "x"})

        assert result == {'id': 7}
        assert client._send.await_count == 3

    @pytest.mark.asyncio
    async def test_retries_timeouts(self):
        client = make_client([asyncio.TimeoutError(), (200, {'id': "a"})])

        assert await client.create_account({'name': "x"}) == {'id': "a"}

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        client = make_client([(500, None)] * 3)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account({'name': "x"})

        assert exc_info.value.http_status == 502
        assert client._send.await_count == 3

    @pytest.mark.asyncio
    async def test_client_errors_fail_fast(self):
        client = make_client([(400, {'message': "bad"})])

        with pytest.raises(UpstreamError):
            await client.create_account({'name': "x"})

        assert client._send.await_count == 1

    @pytest.mark.asyncio
    async def test_records_metrics(self):
        metrics = MetricsCollector()
        client = make_client([(503, None), (200, {'id': 1})], metrics=metrics)

        await client.create_account({'name': "x"})

        assert metrics.get_counter(
            'upstream_api_requests_total', {'operation': 'create_account', 'status': '503'}
        ) == 1
        assert metrics.get_counter(
            'upstream_api_requests_total', {'operation': 'create_account', 'status': '200'}
        ) == 1
        assert metrics.get_histogram(
            'upstream_api_request_duration_seconds', {'operation': 'create_account'}
        ).count == 2


class TestLifecycle:
    """Test composite lifecycle calls."""

    @pytest.mark.asyncio
    async def test_create_account_and_service(self):
        client = make_client([(200, {'id': 101}), (200, {'id': 202})])

        tenant = await client.create_account_and_service("i1", "standard", {'customerName': "Acme"})

        assert tenant.account_id == "101"
        assert tenant.service_id == "202"
        first, second = client._send.await_args_list
        assert first.args == ('PUT', f"{ENTITY_PATH}/accounts")
        assert first.kwargs['json']['name'] == "Acme"
        assert second.args == ('PUT', f"{ENTITY_PATH}/services")
        assert second.kwargs['json']['accountId'] == "101"

    @pytest.mark.asyncio
    async def test_service_failure_removes_account(self):
        client = make_client([(200, {'id': "acc"}), (422, {'message': "bad plan"}), (200, {})])

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account_and_service("i1", "standard", {})

        assert exc_info.value.http_status == 422
        cleanup = client._send.await_args_list[-1]
        assert cleanup.args == ('DELETE', f"{ENTITY_PATH}/accounts/acc")

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_original_error(self):
        client = make_client([(200, {'id': "acc"}), (409, {'message': "dup"}), (400, None)])

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account_and_service("i1", "standard", {})

        assert exc_info.value.message == "dup"

    @pytest.mark.asyncio
    async def test_missing_identifier(self):
        client = make_client([(200, {'name': "no id"})])

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_account_and_service("i1", "standard", {})

        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_delete_service_before_account(self):
        client = make_client([(200, None), (200, None)])

        await client.delete_service_and_account("acc", "svc")

        calls = [call.args for call in client._send.await_args_list]
        assert calls == [
            ('DELETE', f"{ENTITY_PATH}/services/svc"),
            ('DELETE', f"{ENTITY_PATH}/accounts/acc"),
        ]

    @pytest.mark.asyncio
    async def test_delete_missing_ok(self):
        client = make_client([(404, None), (404, None)])

        await client.delete_service_and_account("acc", "svc", missing_ok=True)

        assert client._send.await_count == 2

    @pytest.mark.asyncio
    async def test_delete_missing_raises_gone(self):
        client = make_client([(404, None)])

        with pytest.raises(UpstreamError) as exc_info:
            await client.delete_contact_user("user-1")

        assert exc_info.value.http_status == 410

    @pytest.mark.asyncio
    async def test_update_plan(self):
        client = make_client([(200, {'id': "svc"})])

        await client.update_plan("svc", "enterprise", {'bandwidthLimit': 100})

        call = client._send.await_args
        assert call.args == ('POST', f"{ENTITY_PATH}/services/svc")
        assert call.kwargs['json'] == {'planId': "enterprise", 'bandwidthLimit': 100}

    @pytest.mark.asyncio
    async def test_create_contact_user(self):
        client = make_client([(200, {'id': 55, 'email': "ops@example.com"})])

        user = await client.create_contact_user("acc-1", "ops@example.com", {'lastName': "Ops"})

        assert user == {'id': "55", 'email': "ops@example.com", 'account_id': "acc-1"}
        assert client._send.await_args.kwargs['json']['lastName'] == "Ops"

    @pytest.mark.asyncio
    async def test_ping(self):
        client = make_client([(200, [])])
        assert await client.ping() is True

        payload = client._send.await_args.kwargs['json']
        assert payload == {'criteria': [], 'projection': ['id'], 'page': 0, 'size': 1}

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        client = make_client([(401, None)], retries=0)

        assert await client.ping() is False

    def test_from_config(self):
        config = UpstreamConfig(api_base="https://cap.example", api_token="t", role_id="r", retries=5)

        client = UpstreamClient.from_config(config, metrics=MetricsCollector())

        assert client.api_base == "https://cap.example"
        assert client.retry_config.max_attempts == 6
        assert client._headers['x-role-ids'] == "r"
        assert client._headers['Authorization'] == "Bearer t"
