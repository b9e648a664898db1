import hmac
import logging
import os
from flask import Flask, request, jsonify, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from .config import config
from .errors import ConfigError
from .fleet_controller import FleetController
from .routing import RoutingTable
from . import metrics

logger = logging.getLogger(__name__)


def create_app(controller: FleetController, routing: RoutingTable = None, config_name: str = None) -> Flask:
    """Application factory for the orchestrator operations API."""
    if config_name is None:
        config_name = os.getenv('FLEET_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Store services on app for access in routes
    app.controller = controller
    app.routing = routing or RoutingTable(controller.registry)

    if not app.config.get('REST_AUTH_KEY'):
        if not app.config.get('DEBUG'):
            raise ConfigError("REST_AUTH_KEY must be set outside development")
        logger.warning("REST_AUTH_KEY is not set, the operations API accepts unauthenticated requests")

    register_auth(app)
    register_api_routes(app)

    return app


def register_auth(app: Flask):
    """Require the shared key in the Authorization header on every /api/v1 route."""

    @app.before_request
    def check_auth_key():
        key = app.config.get('REST_AUTH_KEY')
        if not key or not request.path.startswith('/api/v1/'):
            return None
        supplied = request.headers.get('Authorization', '')
        if not hmac.compare_digest(supplied.encode(), key.encode()):
            return jsonify({'error': 'Unauthorized'}), 401
        return None


def register_api_routes(app: Flask):
    """Register JSON API routes."""

    # ==================== Health ====================

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'healthy',
            'replica_id': app.controller.replica_id,
            'leader': app.controller.is_leader()
        })

    @app.route('/metrics')
    def prometheus_metrics():
        return Response(generate_latest(metrics.REGISTRY), mimetype=CONTENT_TYPE_LATEST)

    # ==================== Templates ====================

    @app.route('/api/v1/templates', methods=['GET'])
    def api_list_templates():
        """List fleet templates with instance counts."""
        templates = []
        for template in app.controller.templates():
            counts = app.controller.registry.counts(template.template_id)
            templates.append(dict(
                template.to_dict(),
                counts={state.value: count for state, count in counts.items()}
            ))
        return jsonify({'templates': templates, 'count': len(templates)})

    @app.route('/api/v1/templates/<template_id>', methods=['GET'])
    def api_get_template(template_id: str):
        template = app.controller.template(template_id)
        if not template:
            return jsonify({'error': 'Template not found'}), 404
        return jsonify(template.to_dict())

    @app.route('/api/v1/templates/<template_id>', methods=['PATCH'])
    def api_update_template(template_id: str):
        """Change a template's instance limits."""
        template = app.controller.template(template_id)
        if not template:
            return jsonify({'error': 'Template not found'}), 404

        data = request.get_json(silent=True) or {}
        try:
            updated = template.with_limits(
                min_instances=_optional_int(data.get('min_instances')),
                max_instances=_optional_int(data.get('max_instances'))
            )
        except (TypeError, ValueError) as e:
            return jsonify({'error': str(e)}), 400

        stored = app.controller.update_template(updated)
        return jsonify(stored.to_dict())

    @app.route('/api/v1/templates/<template_id>/instances', methods=['GET'])
    def api_list_instances(template_id: str):
        """List instances of a template, optionally filtered by ?state=."""
        state = request.args.get('state')
        instances = app.controller.instances(template_id)
        if state:
            instances = [i for i in instances if i.state.value == state]
        return jsonify({
            'instances': [i.to_dict() for i in instances],
            'count': len(instances)
        })

    @app.route('/api/v1/templates/<template_id>/routing', methods=['GET'])
    def api_routing(template_id: str):
        entries = app.routing.entries(template_id)
        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'count': len(entries)
        })

    @app.route('/api/v1/templates/<template_id>/select', methods=['GET'])
    def api_select(template_id: str):
        """Pick the READY instance a new occupant should join."""
        template = app.controller.template(template_id)
        if not template:
            return jsonify({'error': 'Template not found'}), 404

        entry = app.routing.select(template_id, template.capacity)
        if entry is None:
            return jsonify({'error': 'No instance available'}), 503
        return jsonify(entry.to_dict())

    # ==================== Instances ====================

    @app.route('/api/v1/instances/<instance_id>', methods=['GET'])
    def api_get_instance(instance_id: str):
        instance = app.controller.registry.get(instance_id)
        if not instance:
            return jsonify({'error': 'Instance not found'}), 404
        return jsonify(instance.to_dict())

    @app.route('/api/v1/instances/<instance_id>/heartbeat', methods=['POST'])
    def api_heartbeat(instance_id: str):
        """Heartbeat from a running instance, with its current load."""
        data = request.get_json(silent=True) or {}
        try:
            load = int(data.get('load', 0))
        except (TypeError, ValueError):
            return jsonify({'error': 'load must be an integer'}), 400
        if load < 0:
            return jsonify({'error': 'load must not be negative'}), 400

        instance = app.controller.record_heartbeat(instance_id, load)
        if instance is None:
            return jsonify({'error': 'Instance not found or terminated'}), 404
        return jsonify(instance.to_dict())


def _optional_int(value):
    return None if value is None else int(value)
