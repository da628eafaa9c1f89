"""
Control-panel account synchronization.

`sync_entity` converges an external account to the local entity with a
three-way branch: create when missing, update when fields differ, and issue
no mutating call when they already match. The external id is cached in
`external_account_links` and reused; it is never regenerated.

Creates that take several calls commit the first id (the org, or the hosting
subscription) before the next call, so a retry after a partial create resumes
the missing step instead of creating a second account.
"""
import secrets
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from outbound.datetime_utils import utcnow
from outbound.logging_config import get_logger
from outbound.models import Customer, ExternalAccountLink, Service, TaskKind, db
from outbound.services.task_store import TaskNotRetryable, TaskStore

logger = get_logger(__name__)

ENTITY_TYPES = ("customer", "hosting")
SUPPORTED_CONTROL_PANELS = ("enhance",)

CREATED = "created"
UPDATED = "updated"
NO_CHANGE = "no_change"

# Multi-call creates commit these between steps; the next attempt resumes from them
OWNER_PENDING = "owner_pending"
WEBSITE_PENDING = "website_pending"


class SyncError(Exception):
    """A sync cannot proceed with the current local or remote state."""


@dataclass
class SyncResult:
    entity_type: str
    entity_id: int
    action: str
    external_id: Optional[str]

    def to_dict(self):
        return asdict(self)


class SyncCoordinator:
    """Create-or-update synchronization of customers and hosting accounts."""

    def __init__(
        self,
        client_factory: Callable,
        dispatcher=None,
        default_control_panel: str = "enhance",
    ):
        self._client_factory = client_factory
        self._client = None
        self.dispatcher = dispatcher
        self.default_control_panel = default_control_panel

    @property
    def client(self):
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _resolve_panel(self, control_panel):
        panel = control_panel or self.default_control_panel
        if panel not in SUPPORTED_CONTROL_PANELS:
            raise SyncError(f"Unsupported control panel: {panel}")
        return panel

    @staticmethod
    def _validate_entity_type(entity_type):
        if entity_type not in ENTITY_TYPES:
            raise SyncError(f"Unsupported entity type: {entity_type}")

    @staticmethod
    def _get_link(entity_type, entity_id, control_panel) -> ExternalAccountLink:
        link = ExternalAccountLink.query.filter_by(
            entity_type=entity_type,
            entity_id=entity_id,
            control_panel=control_panel,
        ).first()
        if link is None:
            link = ExternalAccountLink(
                entity_type=entity_type,
                entity_id=entity_id,
                control_panel=control_panel,
            )
            db.session.add(link)
        return link

    @staticmethod
    def _checkpoint(link, external_id, step):
        link.external_id = external_id
        link.last_outcome = step
        db.session.commit()

    @staticmethod
    def _record(link, action, external_id):
        link.external_id = external_id
        link.last_outcome = action
        link.last_synced_at = utcnow()
        link.last_error = None
        db.session.commit()

    def sync_entity(self, entity_type: str, entity_id: int, control_panel: Optional[str] = None) -> SyncResult:
        """
        Synchronize one local entity to the control panel.

        Raises:
            SyncError: the entity is missing/unsyncable or a cached id vanished remotely
            ControlPanelError: a lookup or mutating call failed
        """
        self._validate_entity_type(entity_type)
        panel = self._resolve_panel(control_panel)

        try:
            if entity_type == "customer":
                result = self._sync_customer(entity_id, panel)
            else:
                result = self._sync_hosting(entity_id, panel)
        except Exception as e:
            db.session.rollback()
            self._record_error(entity_type, entity_id, panel, e)
            raise

        logger.info(
            "Entity synced",
            entity_type=entity_type,
            entity_id=entity_id,
            control_panel=panel,
            action=result.action,
            external_id=result.external_id,
        )
        return result

    def _record_error(self, entity_type, entity_id, panel, error):
        link = ExternalAccountLink.query.filter_by(
            entity_type=entity_type, entity_id=entity_id, control_panel=panel
        ).first()
        if link is not None:
            link.last_error = str(error)[:2000]
            db.session.commit()
        logger.warning(
            "Entity sync failed",
            entity_type=entity_type,
            entity_id=entity_id,
            control_panel=panel,
            error=str(error),
        )

    def _sync_customer(self, customer_id, panel) -> SyncResult:
        customer = db.session.get(Customer, customer_id)
        if customer is None:
            raise SyncError(f"Customer {customer_id} not found")

        link = self._get_link("customer", customer.id, panel)
        if link.external_id:
            remote = self.client.get_customer(link.external_id)
            if remote is None:
                raise SyncError(
                    f"Linked account {link.external_id} for customer {customer.id} no longer exists"
                )
            external_id = link.external_id
        else:
            remote = self.client.find_customer_by_email(customer.email)
            external_id = str(remote["id"]) if remote else None

        if remote is None:
            external_id = self.client.create_customer(customer.name)
            self._checkpoint(link, external_id, OWNER_PENDING)

        if link.last_outcome == OWNER_PENDING:
            self.client.create_owner_login(
                external_id,
                email=customer.email,
                name=customer.name,
                password=secrets.token_urlsafe(16),
            )
            action = CREATED
        elif (remote.get("name") or "").strip() != (customer.name or "").strip():
            self.client.update_customer(external_id, name=customer.name)
            action = UPDATED
        else:
            action = NO_CHANGE

        self._record(link, action, external_id)
        return SyncResult("customer", customer.id, action, external_id)

    def _sync_hosting(self, service_id, panel) -> SyncResult:
        service = db.session.get(Service, service_id)
        if service is None or service.service_type != "HOSTING":
            raise SyncError(f"Hosting service {service_id} not found")
        if service.customer_id is None:
            raise SyncError(f"Hosting service {service_id} has no customer")

        owner = self._sync_customer(service.customer_id, panel)
        org_id = owner.external_id
        desired_suspended = service.status != "ACTIVE"

        link = self._get_link("hosting", service.id, panel)
        if link.external_id:
            website = self.client.get_website(org_id, link.external_id)
            if website is None:
                raise SyncError(
                    f"Linked website {link.external_id} for hosting {service.id} no longer exists"
                )
            external_id = link.external_id
        else:
            website = self.client.find_website_by_domain(org_id, service.name)
            external_id = str(website["id"]) if website else None

        if website is None:
            subscription_id = link.subscription_id
            if subscription_id is None:
                if not service.plan_external_id:
                    raise SyncError(f"Hosting service {service.id} has no control-panel plan")
                subscription_id = self.client.create_subscription(org_id, service.plan_external_id)
                link.subscription_id = subscription_id
                self._checkpoint(link, None, WEBSITE_PENDING)
            external_id = self.client.create_website(org_id, service.name, subscription_id)
            self._checkpoint(link, external_id, WEBSITE_PENDING)
            if desired_suspended:
                self.client.update_website(org_id, external_id, isSuspended=True)
            action = CREATED
        elif bool(website.get("isSuspended")) != desired_suspended:
            self.client.update_website(org_id, external_id, isSuspended=desired_suspended)
            action = UPDATED
        else:
            action = NO_CHANGE

        # Finishing a create an earlier attempt started still reports it as created
        if link.last_outcome == WEBSITE_PENDING:
            action = CREATED

        self._record(link, action, external_id)
        return SyncResult("hosting", service.id, action, external_id)

    def enqueue_sync(self, entity_type: str, entity_id: int, control_panel: Optional[str] = None):
        """
        Queue a sync task unless one is already outstanding for the entity.

        Returns:
            Task or None if an active sync task already exists
        """
        self._validate_entity_type(entity_type)
        panel = self._resolve_panel(control_panel)
        subject_key = f"{entity_type}:{entity_id}"

        if TaskStore.has_active(subject_key, TaskKind.CONTROL_PANEL_SYNC):
            logger.info("Sync already queued", subject_key=subject_key)
            return None

        task = TaskStore.enqueue(
            TaskKind.CONTROL_PANEL_SYNC,
            {"entity_type": entity_type, "entity_id": entity_id, "control_panel": panel},
            subject_key=subject_key,
        )
        db.session.commit()
        return task

    def retry_now(self, task_id: int):
        """Run one sync task immediately through the dispatcher's claim guard."""
        task = TaskStore.get(task_id)
        if task.kind != TaskKind.CONTROL_PANEL_SYNC:
            raise TaskNotRetryable(task_id, task.status)
        return self.dispatcher.execute_now(task_id)

    def queue_stats(self, now=None) -> dict:
        now = now or utcnow()
        counts = TaskStore.counts_by_status(TaskKind.CONTROL_PANEL_SYNC)
        return {
            "counts": counts,
            "pending": counts["PENDING"],
            "failed": counts["FAILED"],
            "dead": counts["DEAD"],
            "due": TaskStore.count_due(now, TaskKind.CONTROL_PANEL_SYNC),
        }
