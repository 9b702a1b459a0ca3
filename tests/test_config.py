"""Tests for environment configuration and startup helpers."""

import pytest

from tautulli_exporter import (
    ConfigError,
    build_scrape_uri,
    load_config,
    mask_secret,
    parse_bool,
    parse_duration,
    parse_port,
)


def test_defaults_with_only_api_key():
    config = load_config({'TAUTULLI_API_KEY': 'abc123'})

    assert config.api_key == 'abc123'
    assert config.uri == 'http://127.0.0.1:8181'
    assert config.ssl_verify is False
    assert config.timeout == 5.0
    assert config.port == 9487
    assert config.log_level == 'INFO'


def test_missing_api_key_is_fatal():
    with pytest.raises(ConfigError, match='TAUTULLI_API_KEY'):
        load_config({})


def test_blank_api_key_is_fatal():
    with pytest.raises(ConfigError):
        load_config({'TAUTULLI_API_KEY': '   '})


def test_overrides_from_environment():
    config = load_config({
        'TAUTULLI_API_KEY': 'key',
        'TAUTULLI_URI': 'https://tautulli.example.com:8181/',
        'TAUTULLI_SSL_VERIFY': 'true',
        'TAUTULLI_TIMEOUT': '1m30s',
        'SERVE_PORT': '9999',
        'LOG_LEVEL': 'debug',
    })

    assert config.uri == 'https://tautulli.example.com:8181'
    assert config.ssl_verify is True
    assert config.timeout == 90.0
    assert config.port == 9999
    assert config.log_level == 'DEBUG'


def test_malformed_port_is_fatal():
    with pytest.raises(ConfigError, match='port'):
        load_config({'TAUTULLI_API_KEY': 'key', 'SERVE_PORT': 'http'})


def test_unknown_log_level_is_fatal():
    with pytest.raises(ConfigError, match='log level'):
        load_config({'TAUTULLI_API_KEY': 'key', 'LOG_LEVEL': 'chatty'})


@pytest.mark.parametrize('value,expected', [
    ('5s', 5.0),
    ('500ms', 0.5),
    ('2m', 120.0),
    ('1h', 3600.0),
    ('1.5s', 1.5),
    ('10', 10.0),
    (' 3s ', 3.0),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize('value', ['', 'soon', '5x', 's5', '-1s', '0', '5s junk'])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


@pytest.mark.parametrize('value,expected', [
    ('true', True), ('1', True), ('YES', True), ('on', True),
    ('false', False), ('0', False), ('No', False), ('off', False),
])
def test_parse_bool(value, expected):
    assert parse_bool(value) is expected


def test_parse_bool_rejects_garbage():
    with pytest.raises(ConfigError):
        parse_bool('maybe')


@pytest.mark.parametrize('value', ['0', '65536', '-5', ''])
def test_parse_port_out_of_range(value):
    with pytest.raises(ConfigError):
        parse_port(value)


def test_build_scrape_uri():
    uri = build_scrape_uri('http://127.0.0.1:8181/', 'abc123')
    assert uri == 'http://127.0.0.1:8181/api/v2?apikey=abc123&cmd=get_activity'


def test_build_scrape_uri_escapes_key():
    uri = build_scrape_uri('http://host', 'a b&c')
    assert uri == 'http://host/api/v2?apikey=a+b%26c&cmd=get_activity'


def test_build_scrape_uri_requires_http_scheme():
    with pytest.raises(ConfigError):
        build_scrape_uri('127.0.0.1:8181', 'key')


def test_mask_secret_never_returns_full_key():
    assert mask_secret('0123456789abcdef') == '01...'
    assert mask_secret('abcdefgh') == '***'
    assert mask_secret('abc') == '***'
