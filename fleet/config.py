import os
import tomllib
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigError
from .instances import FleetTemplate
from .name_generator import generate_replica_id
from shared.retry import BackoffPolicy


class Config:
    # Endpoint overrides, only applied when set
    REDIS_URL = os.getenv('REDIS_URL')
    DATABASE_URL = os.getenv('DATABASE_URL')
    FLEET_NAMESPACE = os.getenv('FLEET_NAMESPACE')

    # Cluster
    FLEET_CONFIG_PATH = os.getenv('FLEET_CONFIG_PATH', 'fleet.toml')

    # Operations API
    API_HOST = os.getenv('API_HOST', '0.0.0.0')
    API_PORT = int(os.getenv('API_PORT', '8080'))
    REST_AUTH_KEY = os.getenv('REST_AUTH_KEY')

    LEADER_ELECTION = os.getenv('LEADER_ELECTION')


class DevelopmentConfig(Config):
    DEBUG = True
    LEADER_ELECTION = False


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    DEBUG = True
    TESTING = True
    REDIS_URL = 'redis://localhost:6379'
    DATABASE_URL = 'sqlite:///:memory:'
    LEADER_ELECTION = False
    REST_AUTH_KEY = 'test-auth-key'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


REQUIRED_KEYS = (
    'cluster_namespace',
    'fleet_templates',
    'heartbeat_timeout_seconds',
    'readiness_timeout_seconds',
    'event_bus_endpoint',
    'store_endpoint',
)


@dataclass
class FleetConfig:
    """
    Structured configuration of one orchestrator replica.

    Timeouts given here are the defaults for templates that do not set their
    own. Retry and interval values are policy and can be tuned per deployment.
    """
    cluster_namespace: str
    fleet_templates: List[FleetTemplate]
    heartbeat_timeout_seconds: int
    readiness_timeout_seconds: int
    event_bus_endpoint: str
    store_endpoint: str
    reconcile_interval_seconds: float = 5.0
    drain_timeout_seconds: int = 600
    retry_max_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    watch_queue_size: int = 1000
    terminated_retention_seconds: int = 300
    leader_election: bool = True
    leader_ttl_ms: int = 5000
    api_host: str = '0.0.0.0'
    api_port: int = 8080
    replica_id: str = field(default_factory=generate_replica_id)

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds
        )

    def template(self, template_id: str) -> Optional[FleetTemplate]:
        for template in self.fleet_templates:
            if template.template_id == template_id:
                return template
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "FleetConfig":
        """Build and validate a config. Raises ConfigError on any problem."""
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        data = {key.replace('-', '_'): value for key, value in data.items()}
        missing = [key for key in REQUIRED_KEYS if data.get(key) in (None, '')]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        heartbeat_timeout = _positive_int(data, 'heartbeat_timeout_seconds')
        readiness_timeout = _positive_int(data, 'readiness_timeout_seconds')

        raw_templates = data['fleet_templates']
        if not isinstance(raw_templates, list) or not raw_templates:
            raise ConfigError("fleet_templates must be a non-empty list")

        templates = []
        seen = set()
        for raw in raw_templates:
            if not isinstance(raw, dict):
                raise ConfigError("Each fleet template must be a mapping")
            raw = dict(raw)
            raw.setdefault('heartbeat_timeout_seconds', heartbeat_timeout)
            raw.setdefault('readiness_timeout_seconds', readiness_timeout)
            try:
                template = FleetTemplate.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid fleet template {raw.get('template_id', '?')}: {e}") from e
            if template.template_id in seen:
                raise ConfigError(f"Duplicate fleet template id: {template.template_id}")
            seen.add(template.template_id)
            templates.append(template)

        options = {}
        for name, cast in (
            ('reconcile_interval_seconds', float),
            ('drain_timeout_seconds', int),
            ('retry_max_attempts', int),
            ('retry_base_delay_seconds', float),
            ('retry_max_delay_seconds', float),
            ('watch_queue_size', int),
            ('terminated_retention_seconds', int),
            ('leader_ttl_ms', int),
            ('api_port', int),
        ):
            if name in data:
                try:
                    options[name] = cast(data[name])
                except (TypeError, ValueError):
                    raise ConfigError(f"{name} must be a number")
                if options[name] <= 0:
                    raise ConfigError(f"{name} must be positive")
        if 'leader_election' in data:
            options['leader_election'] = _flag(data, 'leader_election')
        if data.get('api_host'):
            options['api_host'] = str(data['api_host'])
        if data.get('replica_id'):
            options['replica_id'] = str(data['replica_id'])

        return cls(
            cluster_namespace=str(data['cluster_namespace']),
            fleet_templates=templates,
            heartbeat_timeout_seconds=heartbeat_timeout,
            readiness_timeout_seconds=readiness_timeout,
            event_bus_endpoint=str(data['event_bus_endpoint']),
            store_endpoint=str(data['store_endpoint']),
            **options
        )


def _flag(data: dict, key: str) -> bool:
    value = data[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ConfigError(f"{key} must be true or false")


def _positive_int(data: dict, key: str) -> int:
    try:
        value = int(data[key])
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer")
    if value <= 0:
        raise ConfigError(f"{key} must be positive")
    return value


def load_config(path: str = None, env_config: type = None) -> FleetConfig:
    """
    Load the replica configuration from a TOML file.

    ``[[fleet_templates]]`` tables declare the templates. Endpoints and the
    namespace fall back to the environment (REDIS_URL, DATABASE_URL,
    FLEET_NAMESPACE) when the file does not set them and the variable is
    set. Anything still missing is reported by FleetConfig.from_dict.
    """
    env_config = env_config or config[os.getenv('FLEET_ENV', 'default')]
    path = path or env_config.FLEET_CONFIG_PATH

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed configuration file {path}: {e}")

    data = {key.replace('-', '_'): value for key, value in data.items()}
    for key, value in (
        ('event_bus_endpoint', env_config.REDIS_URL),
        ('store_endpoint', env_config.DATABASE_URL),
        ('cluster_namespace', env_config.FLEET_NAMESPACE),
        ('leader_election', env_config.LEADER_ELECTION),
    ):
        if value is not None:
            data.setdefault(key, value)
    data.setdefault('api_host', env_config.API_HOST)
    data.setdefault('api_port', env_config.API_PORT)

    return FleetConfig.from_dict(data)
