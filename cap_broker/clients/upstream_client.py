"""Client for the upstream CAP provisioning API."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import aiohttp

from cap_broker.config import UpstreamConfig
from cap_broker.exceptions import UpstreamError
from cap_broker.monitoring.metrics import MetricsCollector, get_metrics_collector
from cap_broker.utils.retry import RetryConfig, call_with_retry

logger = logging.getLogger(__name__)

ENTITY_PATH = "/api/sdcc/system/entity"
DATABASE_TYPE = "ORIGIN"

RETRYABLE_STATUSES = {408, 429}

DEFAULT_ADDONS = {
    'cdn': {'enabled': False},
    'unlimitedDdosProtection': {'enabled': False},
    'webDDOS': {'enabled': False},
    'cbot': {'enabled': False},
    'premiumSupport': {'enabled': False},
    'eaaf': {'enabled': False},
}

CONTACT_PROFILE_FIELDS = (
    'responsibilities', 'escalationTypes', 'jobTitle', 'phone',
    'description', 'timezone', 'fullName'
)


def is_retryable(exception: Exception) -> bool:
    """Network failures, 5xx, 408 and 429 are retried; other 4xx fail immediately."""
    if not isinstance(exception, UpstreamError):
        return False
    status = exception.upstream_status
    return status is None or status >= 500 or status in RETRYABLE_STATUSES


def build_account_payload(instance_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'name': parameters.get('customerName') or f"OSB-Instance-{instance_id}",
        'type': parameters.get('accountType') or 'STANDARD',
        'description': parameters.get('accountDescription') or f"Created via OSB for instance {instance_id}",
    }


def build_service_payload(account_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    def pick(key, default):
        value = parameters.get(key)
        return default if value is None else value

    return {
        'accountId': account_id,
        'type': 'CWAF',
        'planType': pick('planType', 'STANDARD'),
        'applicationLimit': pick('applicationLimit', 1),
        'bandwidthLimit': pick('bandwidthLimit', 10),
        'dataResidency': pick('dataResidency', 'US_REGION'),
        'popRegions': pick('popRegions', ['North America (Ashburn)']),
        'startTimestamp': pick('startTimestamp', datetime.now(timezone.utc).isoformat()),
        'endTimestamp': pick('endTimestamp', '2066-12-30T22:06:57'),
        'addons': pick('addons', DEFAULT_ADDONS),
    }


def build_contact_payload(account_id: str, email: str, extra: Dict[str, Any]) -> Dict[str, Any]:
    payload = {
        'accountId': account_id,
        'userType': 'CONTACT',
        'email': email,
        'firstName': extra.get('firstName') or 'OSB',
        'lastName': extra.get('lastName') or 'User',
    }
    for key in CONTACT_PROFILE_FIELDS:
        if extra.get(key) is not None:
            payload[key] = extra[key]
    return payload


def _record_id(record: Any, operation: str) -> str:
    if not isinstance(record, dict) or record.get('id') in (None, ''):
        raise UpstreamError(
            "Upstream provisioning service returned no identifier", operation=operation
        )
    return str(record['id'])


@dataclass
class UpstreamTenant:
    """Account and protection service created for one instance."""
    account_id: str
    service_id: str
    account: Dict[str, Any] = field(default_factory=dict)
    service: Dict[str, Any] = field(default_factory=dict)


class UpstreamClient:
    """Async client for account, service and contact-user lifecycle calls.

    Every call goes through one retrying executor; failures surface as
    :class:`UpstreamError` carrying the status the broker reports.
    """

    def __init__(
        self,
        api_base: str,
        api_token: str = "",
        role_id: Optional[str] = None,
        timeout: float = 10.0,
        retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        metrics: Optional[MetricsCollector] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.retry_config = RetryConfig(
            max_attempts=retries + 1,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            jitter=False
        )
        self.metrics = metrics or get_metrics_collector()

        self._headers = {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {api_token}",
        }
        if role_id:
            self._headers['x-role-ids'] = role_id

        self._session = session
        self._owns_session = session is None

        logger.info(f"Upstream client initialized for {self.api_base} (timeout {timeout}s)")

    @classmethod
    def from_config(cls, upstream_config: UpstreamConfig,
                    metrics: Optional[MetricsCollector] = None) -> 'UpstreamClient':
        return cls(
            api_base=upstream_config.api_base,
            api_token=upstream_config.api_token,
            role_id=upstream_config.role_id,
            timeout=upstream_config.timeout,
            retries=upstream_config.retries,
            retry_base_delay=upstream_config.retry_base_delay,
            retry_max_delay=upstream_config.retry_max_delay,
            metrics=metrics
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send(self, method: str, path: str, json: Optional[Any] = None) -> Tuple[int, Any]:
        """Issue one HTTP request and return ``(status, decoded body)``."""
        session = await self._get_session()
        async with session.request(
            method, f"{self.api_base}{path}",
            params={'databaseType': DATABASE_TYPE},
            json=json
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            return response.status, body

    async def _request(self, method: str, path: str, operation: str,
                       json: Optional[Any] = None) -> Any:
        async def attempt():
            start = time.monotonic()
            try:
                status, body = await self._send(method, path, json=json)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._record(operation, 'error', start)
                raise UpstreamError.no_response(operation, cause=e)

            self._record(operation, str(status), start)
            if status >= 400:
                message = body.get('message') if isinstance(body, dict) else None
                raise UpstreamError.from_status(status, message, operation)

            logger.debug(f"Upstream {method} {path} succeeded with {status}")
            return body if body is not None else {}

        return await call_with_retry(
            attempt,
            config=self.retry_config,
            retry_if=is_retryable,
            operation_name=f"upstream {operation}"
        )

    def _record(self, operation: str, status: str, start: float) -> None:
        labels = {'operation': operation, 'status': status}
        self.metrics.increment_counter('upstream_api_requests_total', labels=labels)
        self.metrics.observe_histogram(
            'upstream_api_request_duration_seconds',
            time.monotonic() - start,
            labels={'operation': operation}
        )

    # Accounts

    async def create_account(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request('PUT', f"{ENTITY_PATH}/accounts", 'create_account', json=payload)

    async def delete_account(self, account_id: str, missing_ok: bool = False) -> None:
        await self._delete(f"{ENTITY_PATH}/accounts/{account_id}", 'delete_account', missing_ok)

    # Services

    async def create_service(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request('PUT', f"{ENTITY_PATH}/services", 'create_service', json=payload)

    async def delete_service(self, service_id: str, missing_ok: bool = False) -> None:
        await self._delete(f"{ENTITY_PATH}/services/{service_id}", 'delete_service', missing_ok)

    async def update_plan(self, service_id: str, new_plan_id: str,
                          extra_params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Move an upstream service to another plan."""
        logger.info(f"Updating upstream service {service_id} to plan {new_plan_id}")
        payload = {'planId': new_plan_id, **(extra_params or {})}
        return await self._request(
            'POST', f"{ENTITY_PATH}/services/{service_id}", 'update_plan', json=payload
        )

    # Contact users

    async def create_contact_user(self, account_id: str, email: str,
                                  extra: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """Create a CONTACT user under an account.

        Returns:
            ``{'id', 'email', 'account_id'}`` of the created user
        """
        payload = build_contact_payload(account_id, email, extra or {})
        record = await self._request('PUT', f"{ENTITY_PATH}/users", 'create_contact_user', json=payload)
        user_id = _record_id(record, 'create_contact_user')

        logger.info(f"Created upstream contact user {user_id} for account {account_id}")
        return {
            'id': user_id,
            'email': record.get('email') or email,
            'account_id': account_id,
        }

    async def delete_contact_user(self, user_id: str, missing_ok: bool = False) -> None:
        await self._delete(f"{ENTITY_PATH}/users/{user_id}", 'delete_contact_user', missing_ok)
        logger.info(f"Deleted upstream contact user {user_id}")

    async def _delete(self, path: str, operation: str, missing_ok: bool) -> None:
        try:
            await self._request('DELETE', path, operation)
        except UpstreamError as e:
            if missing_ok and e.upstream_status == 404:
                logger.info(f"Upstream resource {path} already absent")
                return
            raise

    # Composite lifecycle

    async def create_account_and_service(self, instance_id: str, plan_id: str,
                                         parameters: Optional[Dict[str, Any]] = None) -> UpstreamTenant:
        """Create the tenant account and its CWAF service for an instance.

        If the service cannot be created the account is removed again before
        the original error propagates.
        """
        parameters = parameters or {}
        logger.info(
            f"Creating upstream account and service for plan {plan_id}",
            extra={'instance_id': instance_id}
        )

        account = await self.create_account(build_account_payload(instance_id, parameters))
        account_id = _record_id(account, 'create_account')

        try:
            service = await self.create_service(build_service_payload(account_id, parameters))
            service_id = _record_id(service, 'create_service')
        except UpstreamError:
            try:
                await self.delete_account(account_id)
            except UpstreamError as cleanup_error:
                logger.error(
                    f"Failed to remove upstream account {account_id} after service creation failed: "
                    f"{cleanup_error}",
                    extra={'instance_id': instance_id}
                )
            raise

        logger.info(
            f"Created upstream account {account_id} and service {service_id}",
            extra={'instance_id': instance_id}
        )
        return UpstreamTenant(account_id=account_id, service_id=service_id,
                              account=account, service=service)

    async def delete_service_and_account(self, account_id: Optional[str],
                                         service_id: Optional[str],
                                         missing_ok: bool = False) -> None:
        """Delete the service first, then its owning account.

        With ``missing_ok`` an upstream 404 counts as already deleted.
        """
        if service_id:
            await self.delete_service(service_id, missing_ok=missing_ok)
        if account_id:
            await self.delete_account(account_id, missing_ok=missing_ok)
        logger.info(f"Deleted upstream account {account_id} and service {service_id}")

    async def ping(self) -> bool:
        """Minimal side-effect-free query used by health reporting."""
        try:
            await self._request(
                'POST', f"{ENTITY_PATH}/accounts", 'ping',
                json={'criteria': [], 'projection': ['id'], 'page': 0, 'size': 1}
            )
            return True
        except UpstreamError as e:
            logger.warning(f"Upstream API ping failed: {e}")
            return False
