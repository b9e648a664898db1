import logging
from contextlib import contextmanager
from typing import List, Optional, Iterable

from sqlalchemy import create_engine, select, update, text
from sqlalchemy.exc import IntegrityError, OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import TransientError, VersionConflict
from .instances import FleetTemplate, ServerInstance
from .models import Base, FleetTemplateDocument, ServerInstanceDocument, InstanceTransition
from shared.state_machine import InstanceState

logger = logging.getLogger(__name__)

LIVE_STATES = [state.value for state in InstanceState if state != InstanceState.TERMINATED]


class PersistenceStore:
    """
    Durable storage of fleet templates and instance records.

    Instance writes are optimistic: ``save_instance`` only succeeds when the
    stored version equals the version the caller read, otherwise it raises
    VersionConflict and the caller refreshes from ``get_instance``.
    Connection-level failures surface as TransientError.
    """

    def __init__(self, store_endpoint: str = None, engine=None):
        if engine is None:
            engine = self._create_engine(store_endpoint)
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(store_endpoint: str):
        if store_endpoint.startswith('sqlite'):
            # One shared connection so in-memory databases are visible to every thread.
            return create_engine(
                store_endpoint,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool
            )
        return create_engine(store_endpoint, pool_pre_ping=True, pool_timeout=5)

    def create_schema(self):
        Base.metadata.create_all(self.engine)

    def drop_schema(self):
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self):
        session = self.Session()
        try:
            yield session
            session.commit()
        except (OperationalError, DBAPIError) as e:
            session.rollback()
            if isinstance(e, IntegrityError):
                raise
            raise TransientError(f"Persistence store unavailable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.session() as session:
                session.execute(text('SELECT 1'))
            return True
        except TransientError:
            return False

    # ==================== Fleet templates ====================

    def get_template(self, template_id: str) -> Optional[FleetTemplate]:
        with self.session() as session:
            doc = session.get(FleetTemplateDocument, template_id)
            return doc.to_template() if doc else None

    def list_templates(self) -> List[FleetTemplate]:
        with self.session() as session:
            docs = session.execute(
                select(FleetTemplateDocument).order_by(FleetTemplateDocument.template_id)
            ).scalars().all()
            return [doc.to_template() for doc in docs]

    def save_template(self, template: FleetTemplate) -> FleetTemplate:
        """
        Store a template. Updates must carry a higher version than the
        stored one; an older or equal version leaves the document untouched.
        """
        with self.session() as session:
            doc = session.get(FleetTemplateDocument, template.template_id)
            if doc is None:
                doc = FleetTemplateDocument(template_id=template.template_id)
                doc.update_from(template)
                session.add(doc)
                logger.info(f"Stored fleet template {template.template_id} v{template.version}")
            elif template.version > doc.version:
                doc.update_from(template)
                logger.info(f"Updated fleet template {template.template_id} to v{template.version}")
            return doc.to_template()

    def sync_templates(self, templates: Iterable[FleetTemplate]) -> List[FleetTemplate]:
        """
        Load configured templates into the store. A configured template whose
        fields differ from the stored document becomes its next version.
        """
        stored = []
        for template in templates:
            existing = self.get_template(template.template_id)
            if existing is None:
                stored.append(self.save_template(template))
                continue
            current = dict(existing.to_dict(), version=template.version)
            if current == template.to_dict():
                stored.append(existing)
                continue
            bumped = FleetTemplate.from_dict(dict(template.to_dict(), version=existing.version + 1))
            stored.append(self.save_template(bumped))
        return stored

    # ==================== Server instances ====================

    def get_instance(self, instance_id: str) -> Optional[ServerInstance]:
        with self.session() as session:
            doc = session.get(ServerInstanceDocument, instance_id)
            return doc.to_instance() if doc else None

    def find_by_pod_name(self, pod_name: str) -> Optional[ServerInstance]:
        with self.session() as session:
            doc = session.execute(
                select(ServerInstanceDocument)
                .where(ServerInstanceDocument.pod_name == pod_name)
                .order_by(ServerInstanceDocument.created_at.desc())
            ).scalars().first()
            return doc.to_instance() if doc else None

    def list_instances(self, template_id: str = None, live_only: bool = False) -> List[ServerInstance]:
        with self.session() as session:
            query = select(ServerInstanceDocument)
            if template_id:
                query = query.where(ServerInstanceDocument.template_id == template_id)
            if live_only:
                query = query.where(ServerInstanceDocument.state.in_(LIVE_STATES))
            query = query.order_by(ServerInstanceDocument.created_at)
            return [doc.to_instance() for doc in session.execute(query).scalars().all()]

    def list_live_instances(self) -> List[ServerInstance]:
        return self.list_instances(live_only=True)

    def insert_instance(self, instance: ServerInstance, origin_replica_id: str = None) -> ServerInstance:
        """Store a brand new instance record. Raises VersionConflict if it already exists."""
        try:
            with self.session() as session:
                doc = ServerInstanceDocument(
                    instance_id=instance.instance_id,
                    **ServerInstanceDocument.columns_for(instance)
                )
                session.add(doc)
                session.add(self._transition_row(instance, None, origin_replica_id))
        except IntegrityError:
            existing = self.get_instance(instance.instance_id)
            raise VersionConflict(instance.instance_id, 0, existing.version if existing else None)
        return instance

    def save_instance(
        self,
        instance: ServerInstance,
        expected_version: int,
        old_state: InstanceState = None,
        origin_replica_id: str = None
    ) -> ServerInstance:
        """
        Conditionally replace the stored instance record.

        The write only applies when the stored version equals
        ``expected_version``. A state change is also appended to the
        transition history in the same transaction.
        """
        with self.session() as session:
            result = session.execute(
                update(ServerInstanceDocument)
                .where(ServerInstanceDocument.instance_id == instance.instance_id)
                .where(ServerInstanceDocument.version == expected_version)
                .values(**ServerInstanceDocument.columns_for(instance))
            )
            if result.rowcount == 0:
                session.rollback()
                actual = session.get(ServerInstanceDocument, instance.instance_id)
                raise VersionConflict(
                    instance.instance_id,
                    expected_version,
                    actual.version if actual else None
                )
            if old_state is not None and old_state != instance.state:
                session.add(self._transition_row(instance, old_state, origin_replica_id))
        return instance

    def history(self, instance_id: str) -> List[dict]:
        with self.session() as session:
            rows = session.execute(
                select(InstanceTransition)
                .where(InstanceTransition.instance_id == instance_id)
                .order_by(InstanceTransition.version, InstanceTransition.id)
            ).scalars().all()
            return [row.to_dict() for row in rows]

    @staticmethod
    def _transition_row(instance: ServerInstance, old_state, origin_replica_id) -> InstanceTransition:
        return InstanceTransition(
            instance_id=instance.instance_id,
            template_id=instance.template_id,
            old_state=old_state.value if old_state else None,
            new_state=instance.state.value,
            version=instance.version,
            reason=instance.termination_reason,
            origin_replica_id=origin_replica_id
        )
