import logging
import threading
import redis

from . import metrics

logger = logging.getLogger(__name__)

LEADER_KEY = "fleet:leader"


class LeaderTracker:
    """
    Elects one replica to issue cluster commands.

    Every replica races to set the leader key with NX and a short expiry;
    the holder keeps renewing it. When the leader dies the key expires and
    another replica takes over on its next attempt.
    """

    def __init__(self, redis_client: redis.Redis, replica_id: str, ttl_ms: int = 5000):
        self.redis = redis_client
        self.replica_id = replica_id
        self.ttl_ms = ttl_ms
        self._is_leader = False
        self._stop = threading.Event()
        self._thread = None

    def is_leader(self) -> bool:
        return self._is_leader

    def update(self) -> bool:
        try:
            self.redis.set(LEADER_KEY, self.replica_id, nx=True, px=self.ttl_ms)
            leader_id = self.redis.get(LEADER_KEY)
            leader = leader_id == self.replica_id
            if leader:
                self.redis.pexpire(LEADER_KEY, self.ttl_ms)
        except redis.RedisError as e:
            logger.warning(f"Leader election failed, stepping down: {e}")
            leader = False

        if leader and not self._is_leader:
            logger.info(f"Replica {self.replica_id} is now the fleet leader")
        elif not leader and self._is_leader:
            logger.info(f"Replica {self.replica_id} is no longer the fleet leader")
        self._is_leader = leader
        metrics.IS_LEADER.set(1 if leader else 0)
        return leader

    def start(self):
        interval = self.ttl_ms / 1000.0 / 2.5
        self.update()

        def loop():
            while not self._stop.wait(interval):
                self.update()

        self._thread = threading.Thread(target=loop, name="leader-tracker", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        if self._is_leader:
            try:
                if self.redis.get(LEADER_KEY) == self.replica_id:
                    self.redis.delete(LEADER_KEY)
            except redis.RedisError as e:
                logger.warning(f"Failed to release leadership: {e}")
        self._is_leader = False
