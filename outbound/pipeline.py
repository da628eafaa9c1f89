"""
Shared service layer for the trigger surfaces.

The cron endpoints, the admin endpoints, the background jobs and the CLI all
go through these accessors, so there is one dispatcher/scheduler/coordinator
per app. They are cached on `app.extensions["outbound"]`; tests replace
entries there to plug in fake senders or a fake control-panel client.
"""
import threading

from flask import current_app

from outbound.control_panel.client import get_enhance_client
from outbound.models import TaskKind
from outbound.senders.control_panel import ControlPanelSyncSender
from outbound.senders.email import SMTPEmailSender
from outbound.services.dispatcher import Dispatcher
from outbound.services.invoice_reminders import mark_reminder_sent
from outbound.services.retry_policy import RetryPolicy
from outbound.services.scheduler import NotificationScheduler
from outbound.services.sync_coordinator import SyncCoordinator

EXTENSION_KEY = "outbound"

_build_lock = threading.Lock()


def build_dispatcher(config, email_sender=None, coordinator=None) -> Dispatcher:
    email_sender = email_sender or SMTPEmailSender.from_config(config)
    dispatcher = Dispatcher(
        senders={
            TaskKind.NOTIFICATION_EMAIL: email_sender,
            TaskKind.INVOICE_REMINDER: email_sender,
        },
        retry_policy=RetryPolicy.from_config(config),
        batch_limit=config.get("DISPATCH_BATCH_LIMIT", 10),
        max_batch_limit=config.get("DISPATCH_MAX_BATCH_LIMIT", 50),
        max_workers=config.get("DISPATCH_MAX_WORKERS", 1),
        stale_after_seconds=config.get("STALE_SENDING_SECONDS", 900),
    )
    dispatcher.on_success(TaskKind.INVOICE_REMINDER, mark_reminder_sent)
    if coordinator is not None:
        dispatcher.register(TaskKind.CONTROL_PANEL_SYNC, ControlPanelSyncSender(coordinator))
        coordinator.dispatcher = dispatcher
    return dispatcher


def build_services(config, email_sender=None, client_factory=None) -> dict:
    coordinator = SyncCoordinator(
        client_factory=client_factory or get_enhance_client,
        default_control_panel=config.get("DEFAULT_CONTROL_PANEL", "enhance"),
    )
    dispatcher = build_dispatcher(config, email_sender=email_sender, coordinator=coordinator)
    scheduler = NotificationScheduler(
        brand_name=config.get("BRAND_NAME", "HostDesk"),
        site_url=config.get("SITE_URL", ""),
        timezone_name=config.get("BUSINESS_TIMEZONE"),
    )
    return {"dispatcher": dispatcher, "scheduler": scheduler, "coordinator": coordinator}


def _services() -> dict:
    """create_app builds these eagerly; the lazy path covers apps assembled by hand."""
    services = current_app.extensions.get(EXTENSION_KEY)
    if services is None:
        with _build_lock:
            services = current_app.extensions.get(EXTENSION_KEY)
            if services is None:
                services = build_services(current_app.config)
                current_app.extensions[EXTENSION_KEY] = services
    return services


def get_dispatcher() -> Dispatcher:
    return _services()["dispatcher"]


def get_scheduler() -> NotificationScheduler:
    return _services()["scheduler"]


def get_sync_coordinator() -> SyncCoordinator:
    return _services()["coordinator"]
