import os
import json
import time
import logging
import redis
from typing import Callable, Optional
from .events import InstanceEvent, heartbeat_message

logger = logging.getLogger(__name__)

HEARTBEAT_CHANNEL = "fleet:heartbeats"


def instance_channel(template_id: str) -> str:
    return f"fleet:{template_id}:instances"


class PubSubClient:
    """
    Event bus adapter over Redis pub/sub.

    Each fleet template has its own channel of InstanceEvent messages.
    Delivery is at-least-once from the receiver's point of view: handlers
    must tolerate duplicates and out-of-order events.
    """

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        self._pubsub = None
        self._listener_thread = None
        self._handlers = {}

    def ping(self) -> bool:
        return bool(self.redis.ping())

    def publish(self, channel: str, message: str):
        self.redis.publish(channel, message)

    def publish_instance_event(self, event: InstanceEvent):
        self.publish(instance_channel(event.template_id), event.to_json())

    def report_heartbeat(self, instance_id: str, load: int = 0):
        """Called by game servers (or their sidecars) to report liveness and load."""
        self.publish(HEARTBEAT_CHANNEL, heartbeat_message(instance_id, load))

    def subscribe(self, channel: str, handler: Callable[[str], None]):
        if self._pubsub is None:
            self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)

        self._handlers[channel] = handler
        self._pubsub.subscribe(**{channel: self._message_handler})

    def subscribe_template(self, template_id: str, handler: Callable[[InstanceEvent], None]):
        def decode(data: str):
            handler(InstanceEvent.from_json(data))
        self.subscribe(instance_channel(template_id), decode)

    def subscribe_heartbeats(self, handler: Callable[[str, int], None]):
        def decode(data: str):
            message = json.loads(data)
            handler(message["instanceId"], int(message.get("load", 0)))
        self.subscribe(HEARTBEAT_CHANNEL, decode)

    def unsubscribe_template(self, template_id: str):
        channel = instance_channel(template_id)
        self._handlers.pop(channel, None)
        if self._pubsub is not None:
            self._pubsub.unsubscribe(channel)

    def _message_handler(self, message):
        if message['type'] == 'message':
            channel = message['channel']
            if channel in self._handlers:
                try:
                    self._handlers[channel](message['data'])
                except Exception as e:
                    logger.exception(f"Error handling message on {channel}: {e}")

    def start_listening(self):
        if self._pubsub is None:
            return
        self._listener_thread = self._pubsub.run_in_thread(
            sleep_time=0.1,
            daemon=True,
            exception_handler=self._listener_error
        )

    def _listener_error(self, error, pubsub, thread):
        # redis-py reconnects on the next read and replays the subscriptions.
        logger.warning(f"Event bus listener error, reconnecting: {error}")
        time.sleep(1.0)

    def stop_listening(self):
        if self._listener_thread is not None:
            self._listener_thread.stop()
            self._listener_thread = None
        if self._pubsub:
            self._pubsub.close()
            self._pubsub = None
