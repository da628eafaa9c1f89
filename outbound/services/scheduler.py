"""
Notification scheduler.

Turns business timing rules into PENDING task rows, once per
(entity, rule, period). It never sends anything itself; the dispatcher does.

Periods:
    - service expiry notices: the service's current expiry date, so a renewal
      opens a new period
    - invoice reminders: the business-timezone calendar day
"""
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from flask import render_template

from outbound.datetime_utils import (
    business_time_to_utc,
    business_today,
    get_business_timezone,
    utcnow,
)
from outbound.logging_config import BatchContext, get_logger
from outbound.models import Invoice, InvoiceSchedule, Service, Setting, TaskKind, db
from outbound.services.invoice_reminders import (
    is_due_today,
    parse_send_time,
    reminder_dedupe_key,
)
from outbound.services.task_store import TaskStore

logger = get_logger(__name__)

EXPIRING_SOON_1 = "EXPIRING_SOON_1"
EXPIRING_SOON_2 = "EXPIRING_SOON_2"
EXPIRING_SOON_3 = "EXPIRING_SOON_3"
EXPIRED = "EXPIRED"
DELETION_WARNING = "DELETION_WARNING"
DELETED = "DELETED"

DELETION_GRACE_DAYS = 7
GENERAL_SETTINGS_KEY = "general"

SERVICE_LABELS = {"DOMAIN": "Domain", "HOSTING": "Hosting", "VPS": "VPS"}

TEMPLATES = {
    EXPIRING_SOON_1: "email/expiring_soon.html",
    EXPIRING_SOON_2: "email/expiring_soon.html",
    EXPIRING_SOON_3: "email/expiring_soon.html",
    EXPIRED: "email/expired.html",
    DELETION_WARNING: "email/deletion_warning.html",
    DELETED: "email/deleted.html",
}


def classify_expiry(expiry_date: date, today: date) -> List[str]:
    """Notifications that apply to a service expiring on `expiry_date`."""
    days = (expiry_date - today).days
    notifications = []
    if 15 < days <= 30:
        notifications.append(EXPIRING_SOON_1)
    elif 7 < days <= 15:
        notifications.append(EXPIRING_SOON_2)
    elif 0 < days <= 7:
        notifications.append(EXPIRING_SOON_3)
    else:
        if days <= 0:
            notifications.append(EXPIRED)
        if days <= -DELETION_GRACE_DAYS:
            notifications.append(DELETION_WARNING)
    return notifications


def expiry_dedupe_key(service, notification: str) -> str:
    return f"expiry:{service.service_type}:{service.id}:{service.expiry_date.isoformat()}:{notification}"


@dataclass
class ScheduleSummary:
    expiring: int = 0
    expired: int = 0
    deletion_warning: int = 0
    invoice_reminder: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def scheduled(self) -> int:
        return self.expiring + self.expired + self.deletion_warning + self.invoice_reminder

    def to_dict(self):
        data = asdict(self)
        data["scheduled"] = self.scheduled
        return data


class NotificationScheduler:
    """Materializes expiry notices and invoice reminders as tasks."""

    def __init__(self, brand_name: str = "HostDesk", site_url: str = "", timezone_name: Optional[str] = None):
        self.brand_name = brand_name
        self.site_url = site_url
        self.timezone_name = timezone_name

    @property
    def tz(self):
        return get_business_timezone(self.timezone_name)

    def run(self, now: Optional[datetime] = None) -> ScheduleSummary:
        """Evaluate every rule once. Per-entity errors are counted, never raised."""
        now = now or utcnow()
        summary = ScheduleSummary()
        with BatchContext("schedule") as ctx:
            self.schedule_expiry_notifications(now, summary)
            self.schedule_invoice_reminders(now, summary)
            ctx.logger.info("Scheduling run finished", **summary.to_dict())
        return summary

    @staticmethod
    def expiry_notifications_enabled() -> bool:
        general = Setting.get_value(GENERAL_SETTINGS_KEY)
        return bool(general.get("serviceExpiryEmailNotifications", True))

    def schedule_expiry_notifications(self, now: datetime, summary: Optional[ScheduleSummary] = None) -> ScheduleSummary:
        summary = summary or ScheduleSummary()
        if not self.expiry_notifications_enabled():
            summary.message = "Service expiry email notifications are disabled"
            logger.info(summary.message)
            return summary

        today = business_today(now, self.tz)
        horizon = today + timedelta(days=30)
        services = (
            Service.query
            .filter(
                Service.status == "ACTIVE",
                Service.customer_id.isnot(None),
                Service.expiry_date.isnot(None),
                Service.expiry_date <= horizon,
            )
            .order_by(Service.id)
            .all()
        )

        for service in services:
            try:
                for notification in classify_expiry(service.expiry_date, today):
                    if self._schedule_service_notice(service, notification, today) is None:
                        continue
                    if notification == EXPIRED:
                        summary.expired += 1
                    elif notification == DELETION_WARNING:
                        summary.deletion_warning += 1
                    else:
                        summary.expiring += 1
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                summary.skipped += 1
                summary.errors.append(f"{service.service_type} {service.id}: {e}")
                logger.error(
                    "Could not evaluate service",
                    service_id=service.id,
                    service_type=service.service_type,
                    error=str(e),
                    exc_info=True,
                )
        return summary

    def schedule_deleted_notice(self, service, now: Optional[datetime] = None):
        """Queue the one-off notice sent when a service is removed."""
        now = now or utcnow()
        if service.customer is None or service.expiry_date is None:
            return None
        today = business_today(now, self.tz)
        task = self._schedule_service_notice(service, DELETED, today)
        db.session.commit()
        return task

    def _schedule_service_notice(self, service, notification: str, today: date):
        customer = service.customer
        if customer is None or not customer.email:
            raise ValueError("service has no customer email")

        days_remaining = (service.expiry_date - today).days
        deletion_date = today + timedelta(days=DELETION_GRACE_DAYS)
        label = SERVICE_LABELS.get(service.service_type, service.service_type)
        context = {
            "brand_name": self.brand_name,
            "site_url": self.site_url,
            "customer_name": customer.name,
            "service_label": label,
            "service_name": service.name,
            "expiry_date": service.expiry_date,
            "days_remaining": days_remaining,
            "deletion_date": deletion_date,
        }
        subjects = {
            EXPIRING_SOON_1: f"Reminder: {service.name} expires in {days_remaining} days - {self.brand_name}",
            EXPIRING_SOON_2: f"Reminder: {service.name} expires in {days_remaining} days - {self.brand_name}",
            EXPIRING_SOON_3: f"Urgent: {service.name} expires in {days_remaining} days - {self.brand_name}",
            EXPIRED: f"{label} {service.name} has expired - {self.brand_name}",
            DELETION_WARNING: f"{label} {service.name} will be deleted on {deletion_date.isoformat()} - {self.brand_name}",
            DELETED: f"{label} {service.name} has been deleted - {self.brand_name}",
        }
        payload = {
            "to": customer.email,
            "subject": subjects[notification],
            "html": render_template(TEMPLATES[notification], notification=notification, **context),
            "notification": notification,
            "customer_id": customer.id,
            "service_id": service.id,
            "service_type": service.service_type,
        }
        return TaskStore.enqueue(
            TaskKind.NOTIFICATION_EMAIL,
            payload,
            dedupe_key=expiry_dedupe_key(service, notification),
            subject_key=f"customer:{customer.id}",
        )

    def schedule_invoice_reminders(self, now: datetime, summary: Optional[ScheduleSummary] = None) -> ScheduleSummary:
        summary = summary or ScheduleSummary()
        tz = self.tz
        today = business_today(now, tz)
        accounting_email = Setting.get_value(GENERAL_SETTINGS_KEY).get("companyAccountingEmail")

        schedules = (
            InvoiceSchedule.query
            .filter(InvoiceSchedule.enabled.is_(True))
            .order_by(InvoiceSchedule.id)
            .all()
        )
        for schedule in schedules:
            try:
                invoice = schedule.invoice
                if invoice is None or not is_due_today(schedule, invoice, today):
                    continue
                send_time = parse_send_time(schedule.send_time)
                scheduled_at = business_time_to_utc(today, send_time, tz) if send_time else now
                cc = [accounting_email] if schedule.cc_accounting_team and accounting_email else []
                if self._schedule_invoice_reminder(schedule, invoice, today, scheduled_at, cc) is not None:
                    summary.invoice_reminder += 1
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                summary.skipped += 1
                summary.errors.append(f"invoice schedule {schedule.id}: {e}")
                logger.error("Could not evaluate invoice schedule", schedule_id=schedule.id, error=str(e), exc_info=True)
        return summary

    def _schedule_invoice_reminder(self, schedule, invoice: Invoice, today: date, scheduled_at, cc):
        customer = invoice.customer
        if customer is None or not customer.email:
            raise ValueError("invoice has no customer email")

        html = render_template(
            "email/invoice_reminder.html",
            brand_name=self.brand_name,
            site_url=self.site_url,
            customer_name=customer.name,
            invoice=invoice,
            balance=f"{invoice.balance:,.2f}",
        )
        payload = {
            "to": customer.email,
            "cc": cc,
            "subject": f"Payment reminder for invoice {invoice.number} - {self.brand_name}",
            "html": html,
            "invoice_id": invoice.id,
            "schedule_id": schedule.id,
        }
        return TaskStore.enqueue(
            TaskKind.INVOICE_REMINDER,
            payload,
            scheduled_at=scheduled_at,
            dedupe_key=reminder_dedupe_key(schedule.id, today),
            subject_key=f"invoice:{invoice.id}",
        )
