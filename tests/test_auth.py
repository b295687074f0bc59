"""Tests for broker authentication."""

import base64
import time

import jwt
import pytest

from cap_broker.api.runtime import BrokerRuntime
from cap_broker.api.service_broker import create_app
from cap_broker.auth import (
    BasicAuthProvider, CompositeAuthProvider, JWTProvider, create_auth_provider
)
from cap_broker.config import AuthConfig
from cap_broker.monitoring.metrics import MetricsCollector
from cap_broker.storage.memory_store import MemoryStateStore

SECRET = "test-secret"
CRN = "crn:v1:bluemix:public:cap-broker::a/123::"


def basic_header(username, password):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {'Authorization': f"Basic {token}"}


def bearer_header(**claims):
    payload = {'sub': CRN, 'exp': int(time.time()) + 300, **claims}
    return {'Authorization': f"Bearer {jwt.encode(payload, SECRET, algorithm='HS256')}"}


def request_data(headers):
    return {'headers': headers, 'client_ip': "10.0.0.1", 'user_agent': "pytest"}


class TestBasicAuthProvider:
    """Test Basic authentication."""

    def test_valid_credentials(self):
        provider = BasicAuthProvider("broker", "s3cret")

        context = provider.authenticate(request_data(basic_header("broker", "s3cret")))

        assert context.authenticated is True
        assert context.principal.subject == "broker"
        assert context.auth_method == "basic_auth"

    @pytest.mark.parametrize("username,password", [("broker", "wrong"), ("other", "s3cret")])
    def test_invalid_credentials(self, username, password):
        provider = BasicAuthProvider("broker", "s3cret")

        assert provider.authenticate(request_data(basic_header(username, password))) is None

    def test_malformed_header(self):
        provider = BasicAuthProvider("broker", "s3cret")

        assert provider.authenticate(request_data({'Authorization': "Basic !!!"})) is None
        assert provider.authenticate(request_data({})) is None


class TestJWTProvider:
    """Test bearer JWT authentication."""

    def test_valid_token(self):
        provider = JWTProvider(SECRET, broker_crn=CRN)

        context = provider.authenticate(request_data(bearer_header()))

        assert context.authenticated is True
        assert context.principal.subject == CRN

    def test_expired_token(self):
        provider = JWTProvider(SECRET)

        assert provider.authenticate(request_data(bearer_header(exp=int(time.time()) - 10))) is None

    def test_wrong_subject(self):
        provider = JWTProvider(SECRET, broker_crn=CRN)

        assert provider.authenticate(request_data(bearer_header(sub="crn:other"))) is None

    def test_wrong_secret(self):
        provider = JWTProvider("another-secret")

        assert provider.authenticate(request_data(bearer_header())) is None

    def test_audience(self):
        provider = JWTProvider(SECRET, audience="cap-broker")

        assert provider.authenticate(request_data(bearer_header(aud="cap-broker"))) is not None
        assert provider.authenticate(request_data(bearer_header(aud="elsewhere"))) is None


class TestCreateAuthProvider:
    """Test provider selection from configuration."""

    def test_nothing_configured(self):
        assert create_auth_provider(AuthConfig()) is None

    def test_basic_only(self):
        assert isinstance(create_auth_provider(AuthConfig(username="u", password="p")), BasicAuthProvider)

    def test_both_schemes(self):
        provider = create_auth_provider(AuthConfig(username="u", password="p", jwt_secret=SECRET))

        assert isinstance(provider, CompositeAuthProvider)
        assert provider.authenticate(request_data(basic_header("u", "p"))) is not None
        assert provider.authenticate(request_data(bearer_header())) is not None


class TestAuthMiddleware:
    """Authentication enforced by the Flask app."""

    @pytest.fixture
    def client(self, test_config, mock_upstream):
        test_config.auth = AuthConfig(username="broker", password="s3cret", jwt_secret=SECRET, broker_crn=CRN)
        runtime = BrokerRuntime(
            test_config, store=MemoryStateStore(), upstream=mock_upstream, metrics=MetricsCollector()
        )
        app = create_app(runtime)
        app.config['TESTING'] = True
        yield app.test_client()
        runtime.stop(drain_timeout=5)

    def test_rejects_anonymous(self, client):
        response = client.get('/v2/catalog', headers={'X-Broker-API-Version': '2.13'})

        assert response.status_code == 401
        assert response.headers['WWW-Authenticate'].startswith('Basic')
        assert response.headers['Cache-Control'] == 'no-store'
        assert response.get_json()['description']

    def test_rejects_before_version_check(self, client):
        response = client.get('/v2/catalog')

        assert response.status_code == 401

    def test_accepts_basic(self, client):
        response = client.get(
            '/v2/catalog', headers={'X-Broker-API-Version': '2.13', **basic_header("broker", "s3cret")}
        )

        assert response.status_code == 200

    def test_accepts_bearer(self, client):
        response = client.get('/v2/catalog', headers={'X-Broker-API-Version': '2.13', **bearer_header()})

        assert response.status_code == 200

    def test_public_endpoints(self, client):
        assert client.get('/health').status_code == 200
        assert client.get('/metrics').status_code == 200
