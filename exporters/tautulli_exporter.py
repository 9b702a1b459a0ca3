#!/usr/bin/env python3

"""
Tautulli Exporter for Prometheus
Republishes Tautulli's current stream and bandwidth activity as gauges.
Every scrape of /metrics triggers exactly one get_activity call.
"""

import os
import re
import sys
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, NamedTuple, Optional
from urllib.parse import urlencode
from wsgiref.simple_server import WSGIRequestHandler, make_server

import requests
import urllib3
from prometheus_client import CollectorRegistry, Counter, Gauge, disable_created_metrics, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

__version__ = '1.0.0'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
logger = logging.getLogger('tautulli_exporter')

NAMESPACE = 'tautulli'
USER_AGENT = 'tautulli-prometheus-exporter'

DEFAULT_URI = 'http://127.0.0.1:8181'
DEFAULT_SSL_VERIFY = 'false'
DEFAULT_TIMEOUT = '5s'
DEFAULT_PORT = '9487'
DEFAULT_LOG_LEVEL = 'INFO'

# gauge attribute -> key under response.data
ACTIVITY_FIELDS = (
    ('stream_total', 'stream_count'),
    ('stream_transcode', 'stream_count_transcode'),
    ('stream_direct_play', 'stream_count_direct_play'),
    ('stream_direct_stream', 'stream_count_direct_stream'),
    ('bandwidth_total', 'total_bandwidth'),
    ('bandwidth_lan', 'lan_bandwidth'),
    ('bandwidth_wan', 'wan_bandwidth'),
)

INDEX_PAGE = """<html>
<head><title>Tautulli Exporter</title></head>
<body>
<h1>Tautulli Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p>Version: {version}</p>
</body>
</html>
"""


class ExporterError(Exception):
    """Base class for exporter errors."""


class ConfigError(ExporterError):
    """Raised when the environment holds an unusable configuration."""


class FetchError(ExporterError):
    """Raised when Tautulli could not be fetched."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Config(NamedTuple):
    api_key: str
    uri: str
    ssl_verify: bool
    timeout: float
    port: int
    log_level: str


_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}
_TRUE_VALUES = ('1', 't', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'f', 'false', 'no', 'off')


def parse_duration(value: str) -> float:
    """
    Parse a duration such as '5s', '500ms', '1m30s' or a bare number of
    seconds into seconds.
    """
    text = value.strip().lower()
    if not text:
        raise ConfigError("empty duration")

    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            raise ConfigError(f"invalid duration: {value!r}")

    if seconds <= 0:
        raise ConfigError(f"duration must be positive: {value!r}")
    return seconds


def parse_bool(value: str) -> bool:
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"invalid boolean: {value!r}")


def parse_port(value: str) -> int:
    try:
        port = int(value.strip())
    except ValueError:
        raise ConfigError(f"invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"port out of range: {port}")
    return port


def load_config(environ: Optional[Dict[str, str]] = None) -> Config:
    """Build the exporter configuration from environment variables."""
    env = os.environ if environ is None else environ

    api_key = env.get('TAUTULLI_API_KEY', '').strip()
    if not api_key:
        raise ConfigError("TAUTULLI_API_KEY environment variable is not set")

    log_level = env.get('LOG_LEVEL', DEFAULT_LOG_LEVEL).strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"invalid log level: {log_level!r}")

    return Config(
        api_key=api_key,
        uri=env.get('TAUTULLI_URI', DEFAULT_URI).strip().rstrip('/'),
        ssl_verify=parse_bool(env.get('TAUTULLI_SSL_VERIFY', DEFAULT_SSL_VERIFY)),
        timeout=parse_duration(env.get('TAUTULLI_TIMEOUT', DEFAULT_TIMEOUT)),
        port=parse_port(env.get('SERVE_PORT', DEFAULT_PORT)),
        log_level=log_level,
    )


def build_scrape_uri(base_uri: str, api_key: str) -> str:
    """Return the get_activity URL for a Tautulli base URI."""
    if not base_uri.startswith(('http://', 'https://')):
        raise ConfigError(f"TAUTULLI_URI must be an http(s) URL: {base_uri!r}")
    query = urlencode({'apikey': api_key, 'cmd': 'get_activity'})
    return f"{base_uri.rstrip('/')}/api/v2?{query}"


def mask_secret(secret: str) -> str:
    return f"{secret[:2]}..." if len(secret) >= 12 else '***'


def get_float(document: Any, path: str) -> float:
    """
    Walk a dotted path through nested dicts and return the value as a float.

    Anything that can't be resolved to a number yields 0.0, so a single
    missing or null field never fails the whole scrape. Tautulli reports
    its counters as strings, so numeric strings are accepted.
    """
    value = document
    for key in path.split('.'):
        if not isinstance(value, dict):
            return 0.0
        value = value.get(key)

    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            # same as a float parse of the digits
            return float('inf') if value > 0 else float('-inf')
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


class TautulliFetcher:
    """
    Performs a single GET against the Tautulli API.

    requests only applies its timeout to connecting and to each socket
    read, so the request runs on a worker thread and fetch() gives up once
    the whole exchange has taken longer than the timeout. A trickling
    upstream then only ties up a worker, not the caller.
    """

    def __init__(self, uri: str, ssl_verify: bool = False, timeout: float = 5.0,
                 max_workers: int = 4):
        self.uri = uri
        self.timeout = timeout
        self.executor = ThreadPoolExecutor(max_workers=max_workers,
                                           thread_name_prefix='tautulli-fetch')
        self.session = requests.Session()
        self.session.verify = ssl_verify
        self.session.headers.update({
            'User-Agent': USER_AGENT,
            'Accept': 'application/json'
        })

        if not ssl_verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def fetch(self) -> bytes:
        """Return the response body, or raise FetchError."""
        future = self.executor.submit(self._request)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise FetchError(f"request timed out after {self.timeout}s") from None

    def _request(self) -> bytes:
        try:
            response = self.session.get(self.uri, timeout=self.timeout, stream=True)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"request failed: {e}") from e

        try:
            if not 200 <= response.status_code < 300:
                raise FetchError(f"HTTP status {response.status_code}",
                                 status_code=response.status_code)
            return response.content
        except requests.exceptions.RequestException as e:
            raise FetchError(f"reading response failed: {e}") from e
        finally:
            response.close()

    def close(self):
        self.executor.shutdown(wait=False)
        self.session.close()


class TautulliCollector:
    """
    Custom Prometheus collector for Tautulli activity.

    Each collect() resets the activity gauges, fetches get_activity once
    and returns a snapshot of all nine metrics. Concurrent collects are
    serialized by an instance lock. Fetch and parse failures are logged
    and reflected in the metrics, never raised.
    """

    def __init__(self, fetch: Callable[[], bytes]):
        self._fetch = fetch
        self._lock = threading.Lock()

        self.up = Gauge('up', 'Was the last scrape of Tautulli successful',
                        namespace=NAMESPACE, registry=None)
        self.total_scrapes = Counter('exporter_total_scrapes', 'Current total Tautulli scrapes',
                                     namespace=NAMESPACE, registry=None)
        self.stream_total = Gauge('stream_count', 'Number of total streams.',
                                  namespace=NAMESPACE, registry=None)
        self.stream_transcode = Gauge('stream_count_transcode', 'Number of streams that are transcoding.',
                                      namespace=NAMESPACE, registry=None)
        self.stream_direct_play = Gauge('stream_direct_play', 'Number of streams that are direct plays.',
                                        namespace=NAMESPACE, registry=None)
        self.stream_direct_stream = Gauge('stream_direct_stream', 'Number of streams that are direct streams.',
                                          namespace=NAMESPACE, registry=None)
        self.bandwidth_total = Gauge('bandwidth_total', 'Total bandwidth utilized.',
                                     namespace=NAMESPACE, registry=None)
        self.bandwidth_lan = Gauge('bandwidth_lan', 'LAN bandwidth utilized.',
                                   namespace=NAMESPACE, registry=None)
        self.bandwidth_wan = Gauge('bandwidth_wan', 'WAN bandwidth utilized.',
                                   namespace=NAMESPACE, registry=None)

    def _metrics(self) -> List[Any]:
        return [self.up, self.total_scrapes] + [getattr(self, attr) for attr, _ in ACTIVITY_FIELDS]

    def describe(self):
        return [desc for metric in self._metrics() for desc in metric.describe()]

    def collect(self):
        with self._lock:
            self._reset_metrics()
            self._scrape()
            # Snapshot under the lock so callers never see a half-updated set
            return [family for metric in self._metrics() for family in metric.collect()]

    def _reset_metrics(self):
        for attr, _ in ACTIVITY_FIELDS:
            getattr(self, attr).set(0)

    def _scrape(self):
        self.total_scrapes.inc()

        try:
            body = self._fetch()
        except FetchError as e:
            self.up.set(0)
            logger.warning(f"Can't scrape Tautulli: {e}")
            return

        # If we got data, we're up
        self.up.set(1)

        try:
            document = json.loads(body)
        except (ValueError, RecursionError) as e:
            logger.warning(f"Tautulli returned an unparsable body: {e}")
            document = {}

        response = document.get('response') if isinstance(document, dict) else None
        data = response.get('data') if isinstance(response, dict) else None
        if not isinstance(data, dict):
            logger.warning("Tautulli response has no response.data object")
            return

        values = {}
        for attr, field in ACTIVITY_FIELDS:
            value = get_float(data, field)
            getattr(self, attr).set(value)
            values[field] = value

        logger.debug(f"Scraped Tautulli activity: {values}")


def create_app(registry: CollectorRegistry) -> Callable:
    """WSGI app serving /metrics from the registry and an index page elsewhere."""
    metrics_app = make_wsgi_app(registry)
    index = INDEX_PAGE.format(version=__version__).encode('utf-8')

    def app(environ, start_response):
        if environ.get('PATH_INFO', '/') == '/metrics':
            return metrics_app(environ, start_response)
        start_response('200 OK', [
            ('Content-Type', 'text/html; charset=utf-8'),
            ('Content-Length', str(len(index))),
        ])
        return [index]

    return app


class _LoggingRequestHandler(WSGIRequestHandler):
    """Sends access logs to the exporter logger instead of stderr."""

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def main() -> int:
    """Main function to run the exporter."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        config = load_config()
        scrape_uri = build_scrape_uri(config.uri, config.api_key)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logging.getLogger().setLevel(config.log_level)

    logger.info(f"Tautulli exporter version: {__version__}")
    logger.info(f"Tautulli Scrape URI: {config.uri}")
    logger.info(f"Tautulli SSL verify: {config.ssl_verify}")
    logger.info(f"Tautulli Timeout: {config.timeout}s")
    logger.info(f"Tautulli API key: {mask_secret(config.api_key)}")

    # only the nine activity series, no *_created companions
    disable_created_metrics()

    fetcher = TautulliFetcher(scrape_uri, ssl_verify=config.ssl_verify, timeout=config.timeout)
    registry = CollectorRegistry()
    registry.register(TautulliCollector(fetcher.fetch))

    try:
        httpd = make_server('', config.port, create_app(registry),
                            ThreadingWSGIServer, handler_class=_LoggingRequestHandler)
    except OSError as e:
        logger.error(f"Could not listen on port {config.port}: {e}")
        fetcher.close()
        return 1

    logger.info(f"Serving /metrics on port {config.port}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        httpd.server_close()
        fetcher.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
