#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to create the schema and load
the configured fleet templates.
"""
import logging
import sys

from fleet.config import load_config
from fleet.errors import ConfigError, TransientError
from fleet.store import PersistenceStore

logger = logging.getLogger("fleet.manage_db")


def deploy(config_path: str = None):
    """Run deployment tasks."""
    fleet_config = load_config(config_path)
    store = PersistenceStore(fleet_config.store_endpoint)

    logger.info("Creating database schema...")
    store.create_schema()

    stored = store.sync_templates(fleet_config.fleet_templates)
    for template in stored:
        logger.info(f"Template {template.template_id} at v{template.version} "
                    f"({template.min_instances}-{template.max_instances} instances)")
    logger.info("Database ready.")
    return stored


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    try:
        deploy(sys.argv[1] if len(sys.argv) > 1 else None)
    except (ConfigError, TransientError) as e:
        logger.error(f"Error preparing the database: {e}")
        sys.exit(1)
