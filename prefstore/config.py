"""
Configuration management for prefstore.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported entry store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class CacheBackend(Enum):
    """Supported aggregate cache backends."""

    MEMORY = "memory"
    REDIS = "redis"
    NONE = "none"


class LedgerBackend(Enum):
    """Supported idempotency ledger backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _parse_enum(enum_cls: type[Enum], env_name: str, default: str) -> Enum:
    raw = os.getenv(env_name, default).lower()
    try:
        return enum_cls(raw)
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {env_name} '{raw}'. Must be one of: {valid}")


@dataclass(frozen=True)
class StorageConfig:
    """Entry store configuration.

    Attributes:
        backend: Which store backend to use
        data_dir: Directory for SQLite shard files
        num_shards: Number of shard files owners are hashed onto
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        max_entries_per_owner: Partition bound per owner
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/prefstore"
    num_shards: int = 16
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    max_entries_per_owner: int = 10_000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            backend=_parse_enum(StoreBackend, "PREFSTORE_STORE_BACKEND", "sqlite"),  # type: ignore[arg-type]
            data_dir=os.getenv("DATA_DIR", "/var/lib/prefstore"),
            num_shards=int(os.getenv("PREFSTORE_NUM_SHARDS", "16")),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            max_entries_per_owner=int(os.getenv("PREFSTORE_MAX_ENTRIES_PER_OWNER", "10000")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Aggregate cache configuration.

    Attributes:
        backend: Which cache backend to use
        redis_url: Redis connection URL (may contain a password)
        key_prefix: Prefix for cache keys
        ttl_seconds: Lifetime of a cached view; bounds staleness
        max_entries: Owners held by the in-memory backend
    """

    backend: CacheBackend = CacheBackend.MEMORY
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "prefstore:agg:"
    ttl_seconds: float = 300.0
    max_entries: int = 10_000

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            backend=_parse_enum(CacheBackend, "PREFSTORE_CACHE_BACKEND", "memory"),  # type: ignore[arg-type]
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            key_prefix=os.getenv("CACHE_KEY_PREFIX", "prefstore:agg:"),
            ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "300")),
            max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "10000")),
        )

    @property
    def redacted_url(self) -> str:
        """Redis URL with any password removed."""
        parts = urlsplit(self.redis_url)
        if parts.password is None:
            return self.redis_url
        netloc = parts.netloc.rsplit("@", 1)[-1]
        user = f"{parts.username}:***@" if parts.username else ":***@"
        return urlunsplit(parts._replace(netloc=user + netloc))


@dataclass(frozen=True)
class IdempotencyConfig:
    """Idempotency ledger configuration.

    Attributes:
        backend: Which ledger backend to use
        ttl_seconds: How long a recorded outcome is replayed
    """

    backend: LedgerBackend = LedgerBackend.SQLITE
    ttl_seconds: float = 24 * 60 * 60

    @classmethod
    def from_env(cls) -> IdempotencyConfig:
        """Load configuration from environment variables."""
        return cls(
            backend=_parse_enum(LedgerBackend, "IDEMPOTENCY_BACKEND", "sqlite"),  # type: ignore[arg-type]
            ttl_seconds=float(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(24 * 60 * 60))),
        )


@dataclass(frozen=True)
class TimeoutConfig:
    """Deadlines and retry policy.

    Attributes:
        store_timeout_ms: Default deadline for each store call
        cache_timeout_ms: Default deadline for each cache call
        read_retries: Extra attempts for reads that fail as unavailable
        retry_delay_ms: Base delay between read retries (grows linearly)
        max_cas_retries: Extra read/CAS cycles for unversioned read-modify-write
    """

    store_timeout_ms: int = 2000
    cache_timeout_ms: int = 200
    read_retries: int = 2
    retry_delay_ms: int = 50
    max_cas_retries: int = 3

    @classmethod
    def from_env(cls) -> TimeoutConfig:
        """Load configuration from environment variables."""
        return cls(
            store_timeout_ms=int(os.getenv("STORE_TIMEOUT_MS", "2000")),
            cache_timeout_ms=int(os.getenv("CACHE_TIMEOUT_MS", "200")),
            read_retries=int(os.getenv("READ_RETRIES", "2")),
            retry_delay_ms=int(os.getenv("RETRY_DELAY_MS", "50")),
            max_cas_retries=int(os.getenv("MAX_CAS_RETRIES", "3")),
        )

    @property
    def store_timeout(self) -> float:
        return self.store_timeout_ms / 1000.0

    @property
    def cache_timeout(self) -> float:
        return self.cache_timeout_ms / 1000.0


@dataclass(frozen=True)
class OrderingConfig:
    """Sortable list spacing.

    Attributes:
        stride: Gap between seeded or renumbered positions
    """

    stride: int = 1000

    @classmethod
    def from_env(cls) -> OrderingConfig:
        """Load configuration from environment variables."""
        return cls(stride=int(os.getenv("SORTABLE_STRIDE", "1000")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Entry store configuration
        cache: Aggregate cache configuration
        idempotency: Idempotency ledger configuration
        timeouts: Deadlines and retry policy
        ordering: Sortable list spacing
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    ordering: OrderingConfig = field(default_factory=OrderingConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            cache=CacheConfig.from_env(),
            idempotency=IdempotencyConfig.from_env(),
            timeouts=TimeoutConfig.from_env(),
            ordering=OrderingConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.num_shards < 1:
            raise ValueError("PREFSTORE_NUM_SHARDS must be at least 1")
        if self.storage.max_entries_per_owner < 1:
            raise ValueError("PREFSTORE_MAX_ENTRIES_PER_OWNER must be at least 1")
        if self.cache.ttl_seconds <= 0:
            raise ValueError("CACHE_TTL_SECONDS must be positive")
        if self.cache.backend == CacheBackend.REDIS and not self.cache.redis_url:
            raise ValueError("REDIS_URL is required when PREFSTORE_CACHE_BACKEND=redis")
        if self.idempotency.ttl_seconds <= 0:
            raise ValueError("IDEMPOTENCY_TTL_SECONDS must be positive")
        if self.timeouts.store_timeout_ms <= 0 or self.timeouts.cache_timeout_ms <= 0:
            raise ValueError("STORE_TIMEOUT_MS and CACHE_TIMEOUT_MS must be positive")
        if self.timeouts.read_retries < 0 or self.timeouts.max_cas_retries < 0:
            raise ValueError("READ_RETRIES and MAX_CAS_RETRIES must not be negative")
        if self.ordering.stride < 2:
            raise ValueError("SORTABLE_STRIDE must be at least 2")

        uses_disk = (
            self.storage.backend == StoreBackend.SQLITE
            or self.idempotency.backend == LedgerBackend.SQLITE
        )
        if uses_disk and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "num_shards": self.storage.num_shards,
                "cache_backend": self.cache.backend.value,
                "redis_url": self.cache.redacted_url
                if self.cache.backend == CacheBackend.REDIS
                else None,
                "cache_ttl_seconds": self.cache.ttl_seconds,
                "idempotency_backend": self.idempotency.backend.value,
                "idempotency_ttl_seconds": self.idempotency.ttl_seconds,
                "store_timeout_ms": self.timeouts.store_timeout_ms,
                "log_level": self.observability.log_level,
            },
        )
