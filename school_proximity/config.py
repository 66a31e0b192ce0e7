"""
Centralized configuration management with validation and type conversion.

Every tunable of the proximity pipeline is read from the environment once,
converted to the right type and validated here, so providers and services
receive plain values instead of calling os.getenv() themselves.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

from school_proximity.models import Category


logger = logging.getLogger(__name__)


class Environment(Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


DEFAULT_OVERPASS_URLS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://lz4.overpass-api.de/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
]

DEFAULT_CATEGORIES = [
    Category("market", "Market", "amenity=marketplace"),
    Category("hospital", "Hospital", "amenity=hospital"),
    Category("clinic", "Clinic", "amenity=clinic"),
    Category("pharmacy", "Pharmacy", "amenity=pharmacy"),
    Category("school", "School", "amenity=school"),
]

# bulk-save collaborator accepts chunks of this many documents
MIN_CHUNK_SIZE = 20
MAX_CHUNK_SIZE = 50


@dataclass
class TimeoutConfig:
    """Timeout configuration for outbound calls, in seconds."""
    discovery: float = 15.0
    routing: float = 20.0
    overpass_server: int = 30
    persistence: float = 30.0
    session: float = 60.0

    def get(self, operation: str) -> float:
        """Get timeout for a specific operation.

        Args:
            operation: Operation name

        Returns:
            Timeout value in seconds
        """
        return getattr(self, operation, self.session)


@dataclass
class DiscoveryConfig:
    """Amenity discovery (Overpass pool) configuration."""
    overpass_urls: List[str] = field(default_factory=lambda: list(DEFAULT_OVERPASS_URLS))
    max_retries: int = 3
    radius_tiers: List[int] = field(default_factory=lambda: [10000, 30000, 40000])


@dataclass
class RoutingConfig:
    """Routing provider configuration."""
    provider: str = "osrm"
    osrm_url: str = "http://localhost:5000"
    directions_url: Optional[str] = None
    directions_api_key: Optional[str] = None
    concurrency: int = 3
    # 0 keeps one limiter per resolve call
    global_concurrency: int = 0
    use_table: bool = False


@dataclass
class BatchConfig:
    """Adaptive batch sizing and pacing."""
    initial_size: int = 5
    min_size: int = 2
    max_size: int = 10
    delay_ms: int = 1000
    fast_threshold: float = 1.0
    slow_threshold: float = 3.0


@dataclass
class CacheConfig:
    """Geo cache configuration."""
    ttl_ms: int = 3600000  # 1 hour


@dataclass
class PersistenceConfig:
    """Bulk-save collaborator configuration."""
    url: Optional[str] = None
    chunk_size: int = 50


@dataclass
class RunsConfig:
    """Retention of finished runs kept by the HTTP service."""
    retention_sec: int = 3600
    max_finished: int = 100


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    max_bytes: int = 10485760  # 10MB
    backup_count: int = 5


class Config:
    """Centralized configuration with validation and type conversion."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.environment = self._get_environment()
        self.debug = self._get_bool("DEBUG", False)
        self.cors_origin = self._get_str("CORS_ORIGIN", "*")

        self.timeout_config = TimeoutConfig(
            discovery=self._get_float("TIMEOUT_DISCOVERY", 15.0),
            routing=self._get_float("TIMEOUT_ROUTING", 20.0),
            overpass_server=self._get_int("OVERPASS_SERVER_TIMEOUT", 30),
            persistence=self._get_float("TIMEOUT_PERSISTENCE", 30.0),
            session=self._get_float("TIMEOUT_SESSION", 60.0),
        )

        self.discovery_config = DiscoveryConfig(
            overpass_urls=self._get_list("OVERPASS_URLS", list(DEFAULT_OVERPASS_URLS)),
            max_retries=self._get_int("DISCOVERY_MAX_RETRIES", 3),
            radius_tiers=[int(r) for r in self._get_list("SEARCH_RADIUS_TIERS", ["10000", "30000", "40000"])],
        )

        self.routing_config = RoutingConfig(
            provider=self._get_str("ROUTING_PROVIDER", "osrm").lower(),
            osrm_url=self._get_str("OSRM_URL", "http://localhost:5000").rstrip("/"),
            directions_url=self._get_optional("DIRECTIONS_URL"),
            directions_api_key=self._get_optional("DIRECTIONS_API_KEY"),
            concurrency=self._get_int("ROUTING_CONCURRENCY", 3),
            global_concurrency=self._get_int("ROUTING_GLOBAL_CONCURRENCY", 0),
            use_table=self._get_bool("ROUTING_USE_TABLE", False),
        )

        self.batch_config = BatchConfig(
            initial_size=self._get_int("BATCH_INITIAL_SIZE", 5),
            min_size=self._get_int("BATCH_MIN_SIZE", 2),
            max_size=self._get_int("BATCH_MAX_SIZE", 10),
            delay_ms=self._get_int("BATCH_DELAY_MS", 1000),
            fast_threshold=self._get_float("BATCH_FAST_THRESHOLD", 1.0),
            slow_threshold=self._get_float("BATCH_SLOW_THRESHOLD", 3.0),
        )

        self.cache_config = CacheConfig(
            ttl_ms=self._get_int("CACHE_TTL_MS", 3600000),
        )

        self.persistence_config = PersistenceConfig(
            url=self._get_optional("RESULTS_STORE_URL"),
            chunk_size=self._get_int("RESULTS_CHUNK_SIZE", 50),
        )

        self.runs_config = RunsConfig(
            retention_sec=self._get_int("RUN_RETENTION_SEC", 3600),
            max_finished=self._get_int("MAX_FINISHED_RUNS", 100),
        )

        self.logging_config = LoggingConfig(
            level=self._get_str("LOG_LEVEL", "INFO"),
            format=self._get_str("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            file=self._get_optional("LOG_FILE"),
            max_bytes=self._get_int("LOG_MAX_BYTES", 10485760),
            backup_count=self._get_int("LOG_BACKUP_COUNT", 5),
        )

        self.categories = self._get_categories("AMENITY_CATEGORIES", DEFAULT_CATEGORIES)

        self._validate()

    def _get_environment(self) -> Environment:
        """Get application environment."""
        env_str = self._get_str("ENVIRONMENT", "development").lower()
        try:
            return Environment(env_str)
        except ValueError:
            raise ValueError(f"Invalid environment: {env_str}")

    def _get_optional(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get optional environment variable.

        Args:
            key: Environment variable name
            default: Default value if not found

        Returns:
            Environment variable value or default
        """
        return os.getenv(key, default) or default

    def _get_str(self, key: str, default: str) -> str:
        """Get string environment variable with default."""
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int) -> int:
        """Get integer environment variable with default.

        Raises:
            ValueError: If value cannot be converted to int
        """
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {key}: {value}")

    def _get_float(self, key: str, default: float) -> float:
        """Get float environment variable with default.

        Raises:
            ValueError: If value cannot be converted to float
        """
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {key}: {value}")

    def _get_bool(self, key: str, default: bool) -> bool:
        """Get boolean environment variable with default."""
        value = os.getenv(key)
        if value is None:
            return default
        return value.lower() in ('1', 'true', 'yes', 'on')

    def _get_list(self, key: str, default: list) -> list:
        """Get comma separated list environment variable with default."""
        value = os.getenv(key)
        if value is None:
            return default
        return [item.strip() for item in value.split(',') if item.strip()]

    def _get_categories(self, key: str, default: List[Category]) -> Dict[str, Category]:
        """Parse ``key|Label|tag`` entries; an empty tag means no backend tag."""
        raw = os.getenv(key)
        if raw is None:
            return {c.key: c for c in default}
        categories = {}
        for item in raw.split(','):
            item = item.strip()
            if not item:
                continue
            parts = [p.strip() for p in item.split('|')]
            if len(parts) != 3 or not parts[0]:
                raise ValueError(f"Invalid category definition in {key}: {item}")
            cat_key, label, tag = parts
            categories[cat_key] = Category(cat_key, label or cat_key.title(), tag or None)
        return categories

    def _validate(self):
        """Validate configuration values."""
        for attr_name in ['discovery', 'routing', 'overpass_server', 'persistence', 'session']:
            timeout = getattr(self.timeout_config, attr_name)
            if timeout <= 0:
                raise ValueError(f"Invalid timeout for {attr_name}: {timeout}")

        if not self.discovery_config.overpass_urls:
            raise ValueError("At least one Overpass instance URL is required")
        if self.discovery_config.max_retries < 0:
            raise ValueError(f"Invalid discovery retry count: {self.discovery_config.max_retries}")
        if not self.discovery_config.radius_tiers or any(r <= 0 for r in self.discovery_config.radius_tiers):
            raise ValueError(f"Invalid search radius tiers: {self.discovery_config.radius_tiers}")

        if self.routing_config.provider not in ('osrm', 'directions'):
            raise ValueError(f"Unknown routing provider: {self.routing_config.provider}")
        if self.routing_config.provider == 'directions' and not self.routing_config.directions_url:
            raise ValueError("DIRECTIONS_URL is required when ROUTING_PROVIDER=directions")
        if self.routing_config.concurrency < 1:
            raise ValueError(f"Invalid routing concurrency: {self.routing_config.concurrency}")
        if self.routing_config.global_concurrency < 0:
            raise ValueError(f"Invalid global routing concurrency: {self.routing_config.global_concurrency}")

        batch = self.batch_config
        if not (1 <= batch.min_size <= batch.initial_size <= batch.max_size):
            raise ValueError(
                f"Batch sizes must satisfy 1 <= min <= initial <= max "
                f"(got {batch.min_size}, {batch.initial_size}, {batch.max_size})"
            )
        if batch.delay_ms < 0:
            raise ValueError(f"Invalid batch delay: {batch.delay_ms}")
        if batch.fast_threshold > batch.slow_threshold:
            raise ValueError("BATCH_FAST_THRESHOLD must not exceed BATCH_SLOW_THRESHOLD")

        if self.cache_config.ttl_ms <= 0:
            raise ValueError(f"Invalid cache TTL: {self.cache_config.ttl_ms}")

        if not (MIN_CHUNK_SIZE <= self.persistence_config.chunk_size <= MAX_CHUNK_SIZE):
            raise ValueError(
                f"Invalid results chunk size: {self.persistence_config.chunk_size} "
                f"(must be {MIN_CHUNK_SIZE}..{MAX_CHUNK_SIZE})"
            )

        if self.runs_config.retention_sec < 0:
            raise ValueError(f"Invalid run retention: {self.runs_config.retention_sec}")
        if self.runs_config.max_finished < 0:
            raise ValueError(f"Invalid finished run limit: {self.runs_config.max_finished}")

        if not self.persistence_config.url:
            logger.debug("RESULTS_STORE_URL not set - bulk save is disabled")

    def get_timeout(self, operation: str) -> float:
        """Get timeout for a specific operation."""
        return self.timeout_config.get(operation)

    def get_category(self, key: str) -> Optional[Category]:
        """Look up a configured category by key."""
        return self.categories.get(key)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for debugging."""
        return {
            'environment': self.environment.value,
            'debug': self.debug,
            'timeout_config': {
                'discovery': self.timeout_config.discovery,
                'routing': self.timeout_config.routing,
                'overpass_server': self.timeout_config.overpass_server,
                'persistence': self.timeout_config.persistence,
            },
            'discovery_config': {
                'overpass_urls': list(self.discovery_config.overpass_urls),
                'max_retries': self.discovery_config.max_retries,
                'radius_tiers': list(self.discovery_config.radius_tiers),
            },
            'routing_config': {
                'provider': self.routing_config.provider,
                'concurrency': self.routing_config.concurrency,
                'global_concurrency': self.routing_config.global_concurrency,
                'use_table': self.routing_config.use_table,
            },
            'batch_config': {
                'initial_size': self.batch_config.initial_size,
                'min_size': self.batch_config.min_size,
                'max_size': self.batch_config.max_size,
                'delay_ms': self.batch_config.delay_ms,
            },
            'cache_config': {'ttl_ms': self.cache_config.ttl_ms},
            'persistence_config': {'chunk_size': self.persistence_config.chunk_size},
            'runs_config': {
                'retention_sec': self.runs_config.retention_sec,
                'max_finished': self.runs_config.max_finished,
            },
            'categories': sorted(self.categories),
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        Configuration instance
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config():
    """Drop the global configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None


def setup_logging(config: Optional[Config] = None):
    """Set up logging based on configuration."""
    from logging.handlers import RotatingFileHandler

    config = config or get_config()

    logging.basicConfig(
        level=getattr(logging, config.logging_config.level.upper()),
        format=config.logging_config.format,
    )

    if config.logging_config.file:
        file_handler = RotatingFileHandler(
            config.logging_config.file,
            maxBytes=config.logging_config.max_bytes,
            backupCount=config.logging_config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(config.logging_config.format))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
