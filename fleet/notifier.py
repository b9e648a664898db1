import logging
import requests

from .instances import FleetTemplate, ServerInstance

logger = logging.getLogger(__name__)


class InstanceNotifier:
    """
    Tells a game server that it has been scheduled for stop, so it can stop
    accepting players and let the current ones finish. Best effort: the
    instance is drained whether or not the notification arrives.
    """

    def __init__(self, timeout: float = 2.0, session: requests.Session = None, auth_key: str = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {'Authorization': auth_key} if auth_key else {}

    def notify_scheduled_for_stop(self, template: FleetTemplate, instance: ServerInstance) -> bool:
        if not template.control_port or not instance.host:
            return False

        url = f"http://{instance.host}:{template.control_port}/server/schedule-stop"
        try:
            resp = self.session.post(
                url,
                json={'instance_id': instance.instance_id},
                headers=self.headers,
                timeout=self.timeout
            )
            if resp.status_code >= 300:
                logger.warning(f"Instance {instance.instance_id} rejected stop notification: {resp.status_code}")
                return False
            return True
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to notify instance {instance.instance_id} that it is scheduled for stop: {e}")
            return False
