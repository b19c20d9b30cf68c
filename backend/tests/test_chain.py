"""
Tests for assembling handler chains from YAML middleware definitions.
"""

import textwrap

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel
from starlette.datastructures import MutableHeaders

from embedded_plugins.chain import (
    MiddlewareDefinition,
    build_chain,
    build_middleware,
    load_middleware_definitions,
)
from embedded_plugins.descriptors import EMBEDDED_PLUGINS, PluginDescriptor
from embedded_plugins.errors import ConfigDecodeError, MiddlewareChainError
from embedded_plugins.registry import build_registry
from tests.asgi_utils import with_peer


class StampConfig(BaseModel):
    label: str = 'stamp'


def _stamp(ctx, next_app, config, name):
    """Appends its label to the X-Trail request header before passing on."""
    async def app(scope, receive, send):
        if scope['type'] == 'http':
            headers = MutableHeaders(scope=scope)
            trail = headers.get('x-trail')
            headers['x-trail'] = f"{trail},{config.label}" if trail else config.label
        await next_app(scope, receive, send)
    return app


@pytest.fixture
def stamp_registry():
    table = {'stamp': PluginDescriptor(StampConfig, _stamp)}
    return build_registry(table, lambda key: None)


def _write(tmp_path, text):
    path = tmp_path / 'dynamic.yml'
    path.write_text(textwrap.dedent(text), encoding='utf-8')
    return path


class TestLoadDefinitions:
    """YAML files in the http.middlewares layout."""

    def test_http_section(self, tmp_path):
        path = _write(tmp_path, """
            http:
              middlewares:
                waf:
                  plugin:
                    modsecurity:
                      modSecurityUrl: http://waf:8080
                      timeoutMillis: "500"
                empty:
                  plugin:
                    realip:
        """)
        definitions = load_middleware_definitions(path)
        assert set(definitions) == {'waf', 'empty'}
        assert definitions['waf'].plugin == {
            'modsecurity': {'modSecurityUrl': 'http://waf:8080', 'timeoutMillis': '500'}
        }
        assert definitions['empty'].plugin == {'realip': None}

    def test_bare_middlewares_section(self, tmp_path):
        path = _write(tmp_path, """
            middlewares:
              geo:
                plugin:
                  geoblock:
                    allowedCountries: DE
        """)
        assert list(load_middleware_definitions(path)) == ['geo']

    def test_missing_section_is_empty(self, tmp_path):
        assert load_middleware_definitions(_write(tmp_path, "routers: {}\n")) == {}

    def test_empty_file_is_empty(self, tmp_path):
        assert load_middleware_definitions(_write(tmp_path, "")) == {}

    def test_non_mapping_root_fails(self, tmp_path):
        with pytest.raises(MiddlewareChainError):
            load_middleware_definitions(_write(tmp_path, "- a\n- b\n"))

    def test_non_mapping_middlewares_fails(self, tmp_path):
        with pytest.raises(MiddlewareChainError):
            load_middleware_definitions(_write(tmp_path, "middlewares: [a]\n"))


class TestBuildMiddleware:
    """A definition must name exactly one embedded plugin."""

    def test_no_plugin(self, stamp_registry):
        with pytest.raises(MiddlewareChainError, match='no plugin'):
            build_middleware(stamp_registry, None, 'mw', MiddlewareDefinition())

    def test_more_than_one_plugin(self, stamp_registry):
        definition = MiddlewareDefinition(plugin={'stamp': {}, 'other': {}})
        with pytest.raises(MiddlewareChainError, match='exactly one plugin'):
            build_middleware(stamp_registry, None, 'mw', definition)

    def test_plugin_that_is_not_embedded(self, stamp_registry):
        definition = MiddlewareDefinition(plugin={'remote': {}})
        with pytest.raises(MiddlewareChainError, match='not an embedded plugin'):
            build_middleware(stamp_registry, None, 'mw', definition)

    def test_decode_errors_propagate(self, stamp_registry):
        definition = MiddlewareDefinition(plugin={'stamp': {'label': {'nested': True}}})
        with pytest.raises(ConfigDecodeError):
            build_middleware(stamp_registry, None, 'mw', definition)


class TestBuildChain:
    """Ordering and all-or-nothing assembly."""

    def test_first_name_is_outermost(self, stamp_registry, echo_app):
        definitions = {
            'a': MiddlewareDefinition(plugin={'stamp': {'label': 'first'}}),
            'b': MiddlewareDefinition(plugin={'stamp': {'label': 'second'}}),
        }
        chain = build_chain(stamp_registry, None, echo_app, ['a', 'b'], definitions)
        with TestClient(chain) as client:
            body = client.get('/').json()
        assert body['headers']['x-trail'] == 'first,second'

    def test_empty_chain_is_the_app(self, stamp_registry, echo_app):
        assert build_chain(stamp_registry, None, echo_app, [], {}) is echo_app

    def test_unknown_middleware_name(self, stamp_registry, echo_app):
        with pytest.raises(MiddlewareChainError, match='does not exist'):
            build_chain(stamp_registry, None, echo_app, ['missing'], {})

    def test_failure_builds_nothing(self, echo_app):
        built = []

        def tracking(ctx, next_app, config, name):
            built.append(name)
            return next_app

        registry = build_registry({'stamp': PluginDescriptor(StampConfig, tracking)}, lambda key: None)
        definitions = {
            'ok': MiddlewareDefinition(plugin={'stamp': {}}),
            'bad': MiddlewareDefinition(plugin={'stamp': {'label': []}}),
        }
        with pytest.raises(ConfigDecodeError):
            build_chain(registry, None, echo_app, ['ok', 'bad'], definitions)
        assert built == []

    def test_aliased_plugins_from_yaml(self, tmp_path, echo_app):
        path = _write(tmp_path, """
            http:
              middlewares:
                client-ip:
                  plugin:
                    clientip:
                      trustedIPs: 10.0.0.0/8
                geo:
                  plugin:
                    geoblock:
                      allowedCountries: DE,FR
        """)
        env = {'TRAEFIK_EMBEDDED_REALIP_KEY': 'clientip'}
        registry = build_registry(EMBEDDED_PLUGINS, env.get, prefix='TRAEFIK_EMBEDDED')
        chain = build_chain(registry, None, echo_app, ['client-ip', 'geo'], load_middleware_definitions(path))
        with TestClient(with_peer(chain, '10.0.0.5')) as client:
            allowed = client.get('/', headers={'X-Forwarded-For': '81.2.69.142', 'CF-IPCountry': 'DE'})
            denied = client.get('/', headers={'X-Forwarded-For': '81.2.69.142', 'CF-IPCountry': 'US'})
        assert allowed.status_code == 200
        assert allowed.json()['client'] == '81.2.69.142'
        assert denied.status_code == 403
