from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.orm import declarative_base

from .instances import FleetTemplate, ServerInstance

Base = declarative_base()


def _aware(value: datetime):
    # SQLite drops tzinfo on the way back; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FleetTemplateDocument(Base):
    __tablename__ = 'fleet_templates'

    template_id = Column(String(100), primary_key=True)
    image = Column(String(500), nullable=False)
    min_instances = Column(Integer, nullable=False, default=0)
    max_instances = Column(Integer, nullable=False, default=1)
    readiness_timeout_seconds = Column(Integer, nullable=False)
    heartbeat_timeout_seconds = Column(Integer, nullable=False)
    cpu = Column(String(20), nullable=False, default='1')
    memory = Column(String(20), nullable=False, default='1024Mi')
    cpu_limit = Column(String(20), nullable=True)
    memory_limit = Column(String(20), nullable=True)
    container_port = Column(Integer, nullable=False, default=25565)
    control_port = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    def to_template(self) -> FleetTemplate:
        return FleetTemplate(
            template_id=self.template_id,
            image=self.image,
            min_instances=self.min_instances,
            max_instances=self.max_instances,
            readiness_timeout_seconds=self.readiness_timeout_seconds,
            heartbeat_timeout_seconds=self.heartbeat_timeout_seconds,
            cpu=self.cpu,
            memory=self.memory,
            cpu_limit=self.cpu_limit,
            memory_limit=self.memory_limit,
            container_port=self.container_port,
            control_port=self.control_port,
            capacity=self.capacity,
            version=self.version
        )

    def update_from(self, template: FleetTemplate):
        for key, value in template.to_dict().items():
            if key != 'template_id':
                setattr(self, key, value)


class ServerInstanceDocument(Base):
    __tablename__ = 'server_instances'

    instance_id = Column(String(50), primary_key=True)
    template_id = Column(String(100), nullable=False, index=True)
    state = Column(String(20), nullable=False, index=True)
    pod_name = Column(String(100), nullable=False, index=True)
    namespace = Column(String(100), nullable=False)
    host = Column(String(100), nullable=True)
    port = Column(Integer, nullable=True)
    load = Column(Integer, nullable=False, default=0)
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    termination_reason = Column(String(50), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    def to_instance(self) -> ServerInstance:
        return ServerInstance(
            instance_id=self.instance_id,
            template_id=self.template_id,
            state=self.state,
            pod_name=self.pod_name,
            namespace=self.namespace,
            host=self.host,
            port=self.port,
            load=self.load or 0,
            last_heartbeat=_aware(self.last_heartbeat),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            termination_reason=self.termination_reason,
            version=self.version
        )

    @staticmethod
    def columns_for(instance: ServerInstance) -> dict:
        return {
            'template_id': instance.template_id,
            'state': instance.state.value,
            'pod_name': instance.pod_name,
            'namespace': instance.namespace,
            'host': instance.host,
            'port': instance.port,
            'load': instance.load,
            'last_heartbeat': instance.last_heartbeat,
            'created_at': instance.created_at,
            'updated_at': instance.updated_at,
            'termination_reason': instance.termination_reason,
            'version': instance.version,
        }


class InstanceTransition(Base):
    """Append-only history of instance state changes, replayable for recovery."""
    __tablename__ = 'instance_transitions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(50), nullable=False)
    template_id = Column(String(100), nullable=False)
    old_state = Column(String(20), nullable=True)
    new_state = Column(String(20), nullable=False)
    version = Column(Integer, nullable=False)
    reason = Column(String(50), nullable=True)
    origin_replica_id = Column(String(50), nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('ix_transitions_instance_version', 'instance_id', 'version'),
    )

    def to_dict(self):
        return {
            'instance_id': self.instance_id,
            'template_id': self.template_id,
            'old_state': self.old_state,
            'new_state': self.new_state,
            'version': self.version,
            'reason': self.reason,
            'origin_replica_id': self.origin_replica_id,
            'recorded_at': _aware(self.recorded_at).isoformat() if self.recorded_at else None,
        }
