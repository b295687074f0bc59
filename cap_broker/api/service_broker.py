"""Open Service Broker API implementation."""

import atexit
import base64
import binascii
import concurrent.futures
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

from flask import Flask, Response, g, jsonify, request
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from cap_broker.api.runtime import BrokerRuntime
from cap_broker.auth import AuthMiddleware, create_auth_provider
from cap_broker.config import Config, config as default_config
from cap_broker.exceptions import BrokerError, UnsupportedAPIVersionError, ValidationError
from cap_broker.logging_config import correlation_id_var
from cap_broker.models.service_broker import BindRequest, ProvisionRequest, UpdateRequest

logger = logging.getLogger(__name__)

API_VERSION_HEADER = 'X-Broker-API-Version'
ORIGINATING_IDENTITY_HEADER = 'X-Broker-API-Originating-Identity'
CORRELATION_ID_HEADER = 'X-Correlation-Id'


def parse_originating_identity(header: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode ``<platform> <base64 JSON>``; returns None when absent or malformed."""
    if not header:
        return None
    try:
        platform, encoded = header.strip().split(' ', 1)
        value = json.loads(base64.b64decode(encoded.strip(), validate=True).decode('utf-8'))
    except (ValueError, binascii.Error, UnicodeDecodeError):
        logger.debug("Ignoring malformed originating identity header")
        return None
    return {'platform': platform, 'value': value}


def parse_bool_arg(name: str) -> bool:
    return request.args.get(name, 'false').strip().lower() == 'true'


def parse_body(model):
    """Validate the JSON body against ``model``, raising a 400 on failure."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = '.'.join(str(part) for part in first.get('loc', ()))
        raise ValidationError(f"Invalid request format: {location} {first.get('msg')}".strip(),
                              field=location or None)


def create_app(runtime: Optional[BrokerRuntime] = None, app_config: Optional[Config] = None) -> Flask:
    """Create Flask application with OSB API routes.

    Without an explicit ``runtime`` one is built from ``app_config`` and
    started immediately, and stopped when the interpreter exits.
    """
    app_config = app_config or (runtime.config if runtime else default_config)
    if runtime is None:
        app_config.validate()
        runtime = BrokerRuntime(app_config).start()
        atexit.register(runtime.stop)
    elif not runtime.started:
        runtime.start()

    app = Flask(__name__)
    app.extensions['cap_broker_runtime'] = runtime
    supported_versions = app_config.broker.supported_api_versions

    def execute(coro):
        """Run an engine coroutine on the runtime loop for the current request."""
        try:
            return runtime.run(coro, correlation_id=g.correlation_id)
        except concurrent.futures.TimeoutError:
            raise BrokerError(
                "Broker request timed out; the operation is still being processed", http_status=504
            )

    def outcome_response(outcome):
        return jsonify(outcome.to_dict()), outcome.http_status

    def log_request(operation: str, **extra):
        identity = g.get('originating_identity')
        if identity:
            extra['originating_identity'] = identity
        logger.info(f"OSB {operation} request", extra={'operation': operation, **extra})

    @app.before_request
    def assign_correlation_id():
        g.request_start = time.monotonic()
        g.correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        correlation_id_var.set(g.correlation_id)
        g.originating_identity = parse_originating_identity(
            request.headers.get(ORIGINATING_IDENTITY_HEADER)
        )

    # Initialize authentication middleware
    auth_middleware = AuthMiddleware(create_auth_provider(app_config.auth))
    auth_middleware.init_app(app)

    @app.before_request
    def check_api_version():
        if not request.path.startswith('/v2/') or request.method == 'OPTIONS':
            return
        version = request.headers.get(API_VERSION_HEADER)
        if version not in supported_versions:
            raise UnsupportedAPIVersionError(version, supported_versions)

    # Configure CORS if enabled
    if app_config.api.enable_cors:
        from flask_cors import CORS
        CORS(app)

    @app.after_request
    def finalize_response(response: Response):
        response.headers['Cache-Control'] = 'no-store'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        correlation_id = g.get('correlation_id')
        if correlation_id:
            response.headers[CORRELATION_ID_HEADER] = correlation_id

        endpoint = request.url_rule.rule if request.url_rule else 'unmatched'
        labels = {'method': request.method, 'endpoint': endpoint}
        runtime.metrics.increment_counter(
            'osb_http_requests_total', labels={**labels, 'status': str(response.status_code)}
        )
        start = g.get('request_start')
        if start is not None:
            runtime.metrics.observe_histogram(
                'osb_http_request_duration_seconds', time.monotonic() - start, labels=labels
            )
        return response

    # Error handlers
    @app.errorhandler(BrokerError)
    def handle_broker_error(error: BrokerError):
        if error.http_status >= 500:
            logger.error(f"Request failed: {error}", extra={'status': error.http_status})
        else:
            logger.info(f"Request rejected: {error}", extra={'status': error.http_status})
        response = jsonify(error.to_osb_dict())
        response.status_code = error.http_status
        if error.http_status == 401:
            response.headers['WWW-Authenticate'] = 'Basic realm="cap-broker"'
        return response

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({'description': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception(f"Unhandled error serving {request.method} {request.path}")
        return jsonify({'description': 'Internal server error'}), 500

    @app.route('/v2/catalog', methods=['GET'])
    def get_catalog():
        """Get service catalog."""
        catalog = runtime.service.get_catalog()
        return jsonify(catalog.model_dump(mode='json', exclude_none=True))

    @app.route('/v2/service_instances/<instance_id>', methods=['PUT'])
    def provision_service_instance(instance_id: str):
        """Provision a service instance."""
        provision_request = parse_body(ProvisionRequest)
        accepts_incomplete = parse_bool_arg('accepts_incomplete')
        log_request('provision', instance_id=instance_id)
        outcome = execute(runtime.service.provision(instance_id, provision_request, accepts_incomplete))
        return outcome_response(outcome)

    @app.route('/v2/service_instances/<instance_id>', methods=['PATCH'])
    def update_service_instance(instance_id: str):
        """Update a service instance."""
        update_request = parse_body(UpdateRequest)
        log_request('update', instance_id=instance_id)
        outcome = execute(runtime.service.update(instance_id, update_request))
        return outcome_response(outcome)

    @app.route('/v2/service_instances/<instance_id>', methods=['DELETE'])
    def deprovision_service_instance(instance_id: str):
        """Deprovision a service instance."""
        log_request('deprovision', instance_id=instance_id)
        outcome = execute(runtime.service.deprovision(
            instance_id,
            request.args.get('service_id'),
            request.args.get('plan_id'),
            parse_bool_arg('accepts_incomplete')
        ))
        return outcome_response(outcome)

    @app.route('/v2/service_instances/<instance_id>/last_operation', methods=['GET'])
    def get_last_operation(instance_id: str):
        """Get the status of an asynchronous operation."""
        outcome = execute(runtime.service.last_operation(instance_id, request.args.get('operation')))
        return outcome_response(outcome)

    @app.route('/v2/service_instances/<instance_id>/service_bindings/<binding_id>', methods=['PUT'])
    def create_service_binding(instance_id: str, binding_id: str):
        """Create a service binding."""
        bind_request = parse_body(BindRequest)
        log_request('bind', instance_id=instance_id, binding_id=binding_id)
        outcome = execute(runtime.service.bind(instance_id, binding_id, bind_request))
        return outcome_response(outcome)

    @app.route('/v2/service_instances/<instance_id>/service_bindings/<binding_id>', methods=['DELETE'])
    def delete_service_binding(instance_id: str, binding_id: str):
        """Delete a service binding."""
        log_request('unbind', instance_id=instance_id, binding_id=binding_id)
        outcome = execute(runtime.service.unbind(
            instance_id,
            binding_id,
            request.args.get('service_id'),
            request.args.get('plan_id')
        ))
        return outcome_response(outcome)

    # Health check endpoint
    @app.route('/health', methods=['GET'])
    def health_check():
        """Composite health of the state store and the upstream API."""
        summary = execute(runtime.check_health())
        body = {'service': 'cap-broker', **summary.to_dict()}
        return jsonify(body), 200 if summary.healthy else 503

    @app.route('/metrics', methods=['GET'])
    def metrics():
        """Prometheus text exposition."""
        execute(runtime.service.refresh_gauges())
        return Response(
            runtime.metrics.get_prometheus_format(),
            content_type='text/plain; version=0.0.4; charset=utf-8'
        )

    return app


def run_server(app_config: Optional[Config] = None):
    """Run the Flask server."""
    app_config = app_config or default_config
    app = create_app(app_config=app_config)
    logger.info(f"Starting CAP service broker on {app_config.api.host}:{app_config.api.port}")
    app.run(
        host=app_config.api.host,
        port=app_config.api.port,
        debug=app_config.api.debug,
        threaded=True,
        use_reloader=False
    )
