#!/usr/bin/env python3
"""
Entry point for the Fleet Orchestrator.

Usage:
    python run.py                    # Run one orchestrator replica
    python run.py path/to/fleet.toml # Run with an explicit configuration file

Environment Variables:
    FLEET_ENV: development, production or testing (default: development)
    FLEET_CONFIG_PATH: Configuration file (default: fleet.toml)
    REDIS_URL, DATABASE_URL, FLEET_NAMESPACE: Endpoint overrides
    REST_AUTH_KEY: Shared key for the operations API and instance control calls
    LOG_LEVEL: Logging level (default: INFO)
"""
import logging
import os
import sys

import redis

from fleet.app import create_app
from fleet.cluster_driver import ClusterDriver
from fleet.config import config, load_config
from fleet.errors import ConfigError, StartupError
from fleet.fleet_controller import FleetController
from fleet.instance_registry import InstanceRegistry
from fleet.leader import LeaderTracker
from fleet.notifier import InstanceNotifier
from fleet.routing import RoutingTable
from fleet.store import PersistenceStore
from shared.pubsub import PubSubClient

logger = logging.getLogger("fleet")


def build_controller(fleet_config, auth_key: str = None) -> FleetController:
    """Connect to the backing services. Raises StartupError if one is unreachable."""
    store = PersistenceStore(fleet_config.store_endpoint)
    if not store.ping():
        raise StartupError(f"Persistence store unreachable at {fleet_config.store_endpoint}")
    store.create_schema()

    bus = PubSubClient(redis_url=fleet_config.event_bus_endpoint)
    try:
        bus.ping()
    except redis.RedisError as e:
        raise StartupError(f"Event bus unreachable at {fleet_config.event_bus_endpoint}: {e}") from e

    driver = ClusterDriver(
        fleet_config.cluster_namespace,
        queue_size=fleet_config.watch_queue_size,
        backoff=fleet_config.backoff
    )
    leader = None
    if fleet_config.leader_election:
        leader = LeaderTracker(bus.redis, fleet_config.replica_id, ttl_ms=fleet_config.leader_ttl_ms)

    return FleetController(
        config=fleet_config,
        registry=InstanceRegistry(),
        store=store,
        driver=driver,
        bus=bus,
        leader=leader,
        notifier=InstanceNotifier(auth_key=auth_key)
    )


def run_orchestrator(config_path: str = None):
    """Run one orchestrator replica until interrupted."""
    env_name = os.getenv('FLEET_ENV', 'development')
    fleet_config = load_config(config_path, config[env_name])
    controller = build_controller(fleet_config, auth_key=config[env_name].REST_AUTH_KEY)
    routing = RoutingTable(controller.registry)
    app = create_app(controller, routing=routing, config_name=env_name)

    controller.start()
    logger.info(f"Starting operations API on {fleet_config.api_host}:{fleet_config.api_port}...")
    try:
        app.run(host=fleet_config.api_host, port=fleet_config.api_port, use_reloader=False)
    finally:
        controller.stop()


if __name__ == '__main__':
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    config_path = sys.argv[1] if len(sys.argv) > 1 else None

    try:
        run_orchestrator(config_path)
    except (ConfigError, StartupError) as e:
        logger.error(f"Startup aborted: {e}")
        sys.exit(1)
