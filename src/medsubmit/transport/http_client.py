"""HTTP session pooling for the government compliance endpoint.

Sessions are pooled so concurrent submissions of different batches reuse
connections, and every HTTPS connection is forced to TLS 1.2 or newer.

Submissions are never retried at the transport layer: a POST retried by
urllib3 would bypass the audit log and the backoff policy. Only idempotent
status reads are retried here.
"""

import logging
import ssl
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from urllib3.util.ssl_ import create_urllib3_context

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_POOL_BLOCK = True
DEFAULT_READ_RETRY_COUNT = 2
DEFAULT_BACKOFF_FACTOR = 0.3


class TLS12Adapter(HTTPAdapter):
    """Force TLS 1.2+ for HTTPS connections.

    Example:
        >>> session = requests.Session()
        >>> session.mount("https://", TLS12Adapter())
    """

    def init_poolmanager(self, *args, **kwargs):
        context = create_urllib3_context()
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        kwargs["ssl_context"] = context
        return super().init_poolmanager(*args, **kwargs)


@dataclass
class ConnectionPoolConfig:
    """Configuration for HTTP connection pooling.

    Attributes:
        max_connections: Maximum number of connections in the pool. Should be at
            least the worker pool size so workers never wait on each other.
        pool_block: Whether to block when the pool is exhausted
        read_retry_count: Transport retries for GET requests only
        backoff_factor: urllib3 backoff factor for those retries
    """

    max_connections: int = DEFAULT_MAX_CONNECTIONS
    pool_block: bool = DEFAULT_POOL_BLOCK
    read_retry_count: int = DEFAULT_READ_RETRY_COUNT
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError(f"max_connections must be >= 1, got {self.max_connections}")
        if self.read_retry_count < 0:
            raise ValueError(f"read_retry_count must be >= 0, got {self.read_retry_count}")
        if self.backoff_factor < 0:
            raise ValueError(f"backoff_factor must be >= 0, got {self.backoff_factor}")


class ConnectionPool:
    """Lazily created, thread-safe shared ``requests.Session``.

    Example:
        >>> with ConnectionPool(ConnectionPoolConfig(max_connections=4)) as pool:
        ...     response = pool.get_session().get(url, timeout=10)
    """

    def __init__(self, config: Optional[ConnectionPoolConfig] = None) -> None:
        self.config = config or ConnectionPoolConfig()
        self._session: Optional[requests.Session] = None
        self._lock = Lock()

    def get_session(self) -> requests.Session:
        """Get or create the pooled session. Thread-safe."""
        with self._lock:
            if self._session is None:
                self._session = self._create_session()
            return self._session

    def _create_session(self) -> requests.Session:
        retry_strategy = Retry(
            total=self.config.read_retry_count,
            backoff_factor=self.config.backoff_factor,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["HEAD", "GET"],
        )

        https_adapter = TLS12Adapter(
            pool_connections=self.config.max_connections,
            pool_maxsize=self.config.max_connections,
            pool_block=self.config.pool_block,
            max_retries=retry_strategy,
        )
        http_adapter = HTTPAdapter(
            pool_connections=self.config.max_connections,
            pool_maxsize=self.config.max_connections,
            pool_block=self.config.pool_block,
            max_retries=retry_strategy,
        )

        session = requests.Session()
        session.mount("https://", https_adapter)
        session.mount("http://", http_adapter)

        logger.info(
            "Created HTTP session with pool_maxsize=%d, pool_block=%s, read_retry_count=%d",
            self.config.max_connections,
            self.config.pool_block,
            self.config.read_retry_count,
        )
        return session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
                logger.debug("ConnectionPool session closed")

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
