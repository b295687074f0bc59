"""Cloudant (CouchDB HTTP API) implementation of broker state storage."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel

from cap_broker.config import DatabaseConfig
from cap_broker.exceptions import (
    AlreadyExistsError, BindingNotFoundError, BrokerError, ErrorCode,
    InstanceNotFoundError, OperationNotFoundError, StorageError
)
from cap_broker.models.state import (
    Operation, OperationState, ServiceBinding, ServiceInstance, utcnow
)
from cap_broker.storage.base import StateStore, merge_partial
from cap_broker.utils.retry import RetryConfig, call_with_retry

logger = logging.getLogger(__name__)

# Attempts to re-read and re-write a document after a revision conflict
CONFLICT_RETRIES = 5
FIND_PAGE_SIZE = 200
# Refresh IAM tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60


def _is_transient(exception: Exception) -> bool:
    return isinstance(exception, StorageError) and exception.transient


class CloudantStateStore(StateStore):
    """Durable store keeping every record as a document in one database.

    Documents are keyed ``instance:{id}``, ``binding:{id}`` and
    ``operation:{id}`` and carry a ``doc_type`` field used by ``_find`` selectors.
    Network failures, 5xx and 429 responses are retried with exponential
    backoff; revision conflicts on update are retried by re-reading the
    document.
    """

    def __init__(
        self,
        url: str,
        database: str = "cap-osb",
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        iam_url: str = "https://iam.cloud.ibm.com/identity/token",
        timeout: float = 10.0,
        retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.url = url.rstrip('/')
        self.database = database
        self.api_key = api_key
        self.username = username
        self.password = password
        self.iam_url = iam_url
        self.timeout = timeout
        self.retry_config = RetryConfig(
            max_attempts=retries + 1,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            jitter=True
        )
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_config(cls, db_config: DatabaseConfig) -> 'CloudantStateStore':
        return cls(
            url=db_config.cloudant_url,
            database=db_config.cloudant_database,
            api_key=db_config.cloudant_api_key,
            username=db_config.cloudant_username,
            password=db_config.cloudant_password,
            iam_url=db_config.cloudant_iam_url,
            timeout=db_config.cloudant_timeout,
            retries=db_config.cloudant_retries
        )

    # Transport

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def _fetch_iam_token(self) -> str:
        session = await self._get_session()
        async with session.post(
            self.iam_url,
            data={
                'grant_type': 'urn:ibm:params:oauth:grant-type:apikey',
                'apikey': self.api_key
            },
            headers={'Accept': 'application/json'}
        ) as response:
            if response.status != 200:
                raise StorageError(
                    "IAM token exchange failed", operation="iam_token", status=response.status
                )
            body = await response.json(content_type=None)

        self._token = body['access_token']
        self._token_expires_at = time.time() + float(body.get('expires_in', 3600))
        return self._token

    async def _auth_headers(self) -> Dict[str, str]:
        if self.api_key:
            if not self._token or time.time() >= self._token_expires_at - TOKEN_REFRESH_MARGIN:
                await self._fetch_iam_token()
            return {'Authorization': f"Bearer {self._token}"}
        if self.username and self.password:
            return {'Authorization': aiohttp.BasicAuth(self.username, self.password).encode()}
        return {}

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None
    ) -> Tuple[int, Any]:
        """Issue one HTTP request and return ``(status, decoded body)``."""
        session = await self._get_session()
        headers = await self._auth_headers()
        async with session.request(
            method, f"{self.url}{path}", params=params, json=json, headers=headers
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            return response.status, body

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None
    ) -> Tuple[int, Any]:
        operation = f"{method} {path}"

        async def attempt():
            try:
                status, body = await self._send(method, path, params=params, json=json)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise StorageError(
                    "Cloudant request failed", operation=operation, transient=True, cause=e
                )
            if status == 401 and self.api_key:
                # Token revoked or expired early; next attempt exchanges a new one
                self._token = None
                raise StorageError(
                    "Cloudant rejected credentials", operation=operation, status=status, transient=True
                )
            if status >= 500 or status == 429:
                raise StorageError(
                    f"Cloudant returned {status}", operation=operation, status=status, transient=True
                )
            return status, body

        return await call_with_retry(
            attempt,
            config=self.retry_config,
            retry_if=_is_transient,
            operation_name=f"cloudant {operation}"
        )

    def _doc_path(self, doc_id: str) -> str:
        return f"/{self.database}/{quote(doc_id, safe='')}"

    @staticmethod
    def _unexpected(operation: str, status: int, body: Any) -> StorageError:
        reason = body.get('reason') if isinstance(body, dict) else None
        return StorageError(
            f"Unexpected Cloudant response {status}" + (f": {reason}" if reason else ""),
            operation=operation,
            status=status
        )

    # Document primitives

    async def _get_doc(self, doc_id: str) -> Optional[Dict[str, Any]]:
        status, body = await self._request('GET', self._doc_path(doc_id))
        if status == 200:
            return body
        if status == 404:
            return None
        raise self._unexpected('get', status, body)

    async def _put_doc(self, doc: Dict[str, Any]) -> bool:
        """Write a document; returns False on a revision conflict."""
        status, body = await self._request('PUT', self._doc_path(doc['_id']), json=doc)
        if status in (200, 201, 202):
            doc['_rev'] = body.get('rev') if isinstance(body, dict) else None
            return True
        if status == 409:
            return False
        raise self._unexpected('put', status, body)

    async def _delete_doc(self, doc: Dict[str, Any]) -> bool:
        """Delete a document revision; returns False on a revision conflict."""
        status, body = await self._request(
            'DELETE', self._doc_path(doc['_id']), params={'rev': doc['_rev']}
        )
        if status in (200, 202, 404):
            return True
        if status == 409:
            return False
        raise self._unexpected('delete', status, body)

    async def _bulk_delete(self, docs: List[Dict[str, Any]]) -> None:
        if not docs:
            return
        payload = {'docs': [{'_id': d['_id'], '_rev': d['_rev'], '_deleted': True} for d in docs]}
        status, body = await self._request('POST', f"/{self.database}/_bulk_docs", json=payload)
        if status not in (200, 201, 202):
            raise self._unexpected('bulk_delete', status, body)
        failed = [r for r in body or [] if isinstance(r, dict) and r.get('error')]
        if failed:
            logger.warning(f"Cloudant bulk delete left {len(failed)} documents behind")

    async def _find(self, selector: Dict[str, Any], limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs: List[Dict[str, Any]] = []
        bookmark = None
        while True:
            page_size = min(limit - len(docs), FIND_PAGE_SIZE) if limit else FIND_PAGE_SIZE
            query: Dict[str, Any] = {'selector': selector, 'limit': page_size}
            if bookmark:
                query['bookmark'] = bookmark
            status, body = await self._request('POST', f"/{self.database}/_find", json=query)
            if status != 200:
                raise self._unexpected('find', status, body)

            page = body.get('docs', [])
            docs.extend(page)
            bookmark = body.get('bookmark')
            if len(page) < page_size or not bookmark or (limit and len(docs) >= limit):
                return docs

    @staticmethod
    def _to_doc(doc_id: str, doc_type: str, model: BaseModel, rev: Optional[str] = None) -> Dict[str, Any]:
        doc = {'_id': doc_id, 'doc_type': doc_type, **model.model_dump(mode='json')}
        if rev:
            doc['_rev'] = rev
        return doc

    async def _update_doc(
        self,
        doc_id: str,
        doc_type: str,
        model_cls: Type[BaseModel],
        apply: Callable[[Dict[str, Any]], Dict[str, Any]],
        not_found: Callable[[], BrokerError]
    ):
        for _ in range(CONFLICT_RETRIES):
            current = await self._get_doc(doc_id)
            if current is None:
                raise not_found()
            model = model_cls(**apply(current))
            if await self._put_doc(self._to_doc(doc_id, doc_type, model, current['_rev'])):
                return model
            logger.debug(f"Revision conflict updating {doc_id}, retrying")

        raise StorageError(f"Too many revision conflicts updating {doc_id}", operation='update')

    # Lifecycle

    async def initialize(self) -> None:
        """Create the database (if needed) and the query index."""
        status, body = await self._request('PUT', f"/{self.database}")
        if status in (201, 202):
            logger.info(f"Created Cloudant database {self.database}")
        elif status == 412:
            logger.debug(f"Cloudant database {self.database} already exists")
        else:
            raise self._unexpected('create_database', status, body)

        status, body = await self._request(
            'POST', f"/{self.database}/_index",
            json={
                'index': {'fields': ['doc_type', 'instance_id']},
                'name': 'type-instance-index',
                'type': 'json'
            }
        )
        if status not in (200, 201):
            logger.warning(f"Could not create Cloudant index (status {status})")

        logger.info("Cloudant state store initialized")

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def ping(self) -> bool:
        try:
            status, _ = await self._send('GET', f"/{self.database}")
            return status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError, StorageError) as e:
            logger.warning(f"Cloudant ping failed: {e}")
            return False

    # Service instances

    async def create_instance(self, instance_id: str, data: Dict[str, Any]) -> ServiceInstance:
        now = utcnow()
        instance = ServiceInstance(
            **{**data, 'instance_id': instance_id, 'created_at': now, 'updated_at': now}
        )
        if not await self._put_doc(self._to_doc(f"instance:{instance_id}", 'instance', instance)):
            raise AlreadyExistsError("Service instance", instance_id, ErrorCode.INSTANCE_ALREADY_EXISTS)

        logger.info(f"Created service instance {instance_id}", extra={'instance_id': instance_id})
        return instance

    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        doc = await self._get_doc(f"instance:{instance_id}")
        return ServiceInstance.model_validate(doc) if doc else None

    async def list_instances(self) -> List[ServiceInstance]:
        return [ServiceInstance.model_validate(d) for d in await self._find({'doc_type': 'instance'})]

    async def update_instance(self, instance_id: str, partial: Dict[str, Any]) -> ServiceInstance:
        def apply(current):
            merged = merge_partial(current, partial, immutable=('instance_id', 'created_at', '_id', '_rev', 'doc_type'))
            merged['updated_at'] = utcnow()
            return merged

        return await self._update_doc(
            f"instance:{instance_id}", 'instance', ServiceInstance, apply,
            lambda: InstanceNotFoundError(instance_id)
        )

    async def delete_instance(self, instance_id: str) -> bool:
        doc_id = f"instance:{instance_id}"
        for _ in range(CONFLICT_RETRIES):
            doc = await self._get_doc(doc_id)
            if doc is None:
                return False
            if await self._delete_doc(doc):
                break
        else:
            raise StorageError(f"Too many revision conflicts deleting {doc_id}", operation='delete')

        bindings = await self._find({'doc_type': 'binding', 'instance_id': instance_id})
        terminal_ops = await self._find({
            'doc_type': 'operation',
            'instance_id': instance_id,
            'state': {'$ne': OperationState.IN_PROGRESS.value}
        })
        await self._bulk_delete(bindings + terminal_ops)

        logger.info(
            f"Deleted service instance {instance_id} with {len(bindings)} bindings",
            extra={'instance_id': instance_id}
        )
        return True

    # Service bindings

    async def create_binding(
        self, instance_id: str, binding_id: str, data: Dict[str, Any]
    ) -> ServiceBinding:
        if await self._get_doc(f"binding:{binding_id}") is not None:
            raise AlreadyExistsError("Service binding", binding_id, ErrorCode.BINDING_ALREADY_EXISTS)
        if await self._get_doc(f"instance:{instance_id}") is None:
            raise InstanceNotFoundError(instance_id)

        binding = ServiceBinding(
            **{**data, 'instance_id': instance_id, 'binding_id': binding_id, 'created_at': utcnow()}
        )
        if not await self._put_doc(self._to_doc(f"binding:{binding_id}", 'binding', binding)):
            raise AlreadyExistsError("Service binding", binding_id, ErrorCode.BINDING_ALREADY_EXISTS)
        return binding

    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        doc = await self._get_doc(f"binding:{binding_id}")
        return ServiceBinding.model_validate(doc) if doc else None

    async def list_bindings(self) -> List[ServiceBinding]:
        return [ServiceBinding.model_validate(d) for d in await self._find({'doc_type': 'binding'})]

    async def list_bindings_by_instance(self, instance_id: str) -> List[ServiceBinding]:
        docs = await self._find({'doc_type': 'binding', 'instance_id': instance_id})
        return [ServiceBinding.model_validate(d) for d in docs]

    async def update_binding(self, binding_id: str, partial: Dict[str, Any]) -> ServiceBinding:
        def apply(current):
            return merge_partial(
                current, partial,
                immutable=('instance_id', 'binding_id', 'created_at', '_id', '_rev', 'doc_type')
            )

        return await self._update_doc(
            f"binding:{binding_id}", 'binding', ServiceBinding, apply,
            lambda: BindingNotFoundError(binding_id)
        )

    async def delete_binding(self, binding_id: str) -> bool:
        doc_id = f"binding:{binding_id}"
        for _ in range(CONFLICT_RETRIES):
            doc = await self._get_doc(doc_id)
            if doc is None:
                return False
            if await self._delete_doc(doc):
                return True
        raise StorageError(f"Too many revision conflicts deleting {doc_id}", operation='delete')

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
        doc_id = f"operation:{operation_id}"
        for _ in range(CONFLICT_RETRIES):
            existing = await self._get_doc(doc_id)
            rev = existing['_rev'] if existing else None
            if await self._put_doc(self._to_doc(doc_id, 'operation', operation, rev)):
                return operation
        raise StorageError(f"Too many revision conflicts writing {doc_id}", operation='put')

    async def get_operation(self, operation_id: str) -> Optional[Operation]:
        doc = await self._get_doc(f"operation:{operation_id}")
        return Operation.model_validate(doc) if doc else None

    async def list_operations_by_instance(self, instance_id: str) -> List[Operation]:
        docs = await self._find({'doc_type': 'operation', 'instance_id': instance_id})
        return [Operation.model_validate(d) for d in docs]

    async def update_operation(
        self,
        operation_id: str,
        state: OperationState,
        description: Optional[str] = None
    ) -> Operation:
        def apply(current):
            updated = dict(current)
            updated['state'] = OperationState(state).value
            if description is not None:
                updated['description'] = description
            updated['updated_at'] = utcnow()
            return updated

        return await self._update_doc(
            f"operation:{operation_id}", 'operation', Operation, apply,
            lambda: OperationNotFoundError(operation_id)
        )

    async def delete_operation(self, operation_id: str) -> bool:
        doc_id = f"operation:{operation_id}"
        for _ in range(CONFLICT_RETRIES):
            doc = await self._get_doc(doc_id)
            if doc is None:
                return False
            if await self._delete_doc(doc):
                return True
        raise StorageError(f"Too many revision conflicts deleting {doc_id}", operation='delete')

    async def has_pending_operation(self, instance_id: str) -> bool:
        docs = await self._find(
            {
                'doc_type': 'operation',
                'instance_id': instance_id,
                'state': OperationState.IN_PROGRESS.value
            },
            limit=1
        )
        return bool(docs)
