from flask_sqlalchemy import SQLAlchemy
from enum import Enum

from outbound.datetime_utils import utcnow, format_datetime_utc

db = SQLAlchemy()


class TaskKind(Enum):
    NOTIFICATION_EMAIL = "notification_email"
    INVOICE_REMINDER = "invoice_reminder"
    CONTROL_PANEL_SYNC = "control_panel_sync"


class TaskStatus(Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    DEAD = "DEAD"            # retries exhausted, never claimed automatically
    CANCELLED = "CANCELLED"


# Statuses a batch run may claim from
CLAIMABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.FAILED)
# Statuses the manual single-task path may claim from
RETRYABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.DEAD)
# Statuses that still represent outstanding work
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.SENDING, TaskStatus.FAILED)


class Task(db.Model):
    """A persisted unit of deferred, retryable outbound work."""
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.Enum(TaskKind, native_enum=False, length=32), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(
        db.Enum(TaskStatus, native_enum=False, length=16),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )

    # Timing
    scheduled_at = db.Column(db.DateTime, nullable=True)  # NULL = eligible immediately
    sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Retry bookkeeping
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)

    # Idempotency: one task per (entity, rule, period)
    dedupe_key = db.Column(db.String(191), unique=True, nullable=True)
    # Entity the task acts on, e.g. "customer:12"
    subject_key = db.Column(db.String(64), nullable=True, index=True)

    # Lease written by the claim; completion writes must present it
    claim_token = db.Column(db.String(32), nullable=True)

    result = db.Column(db.JSON, nullable=True)

    __table_args__ = (
        db.Index("idx_tasks_status_scheduled", "status", "scheduled_at"),
    )

    def __repr__(self):
        return f"<Task {self.id} - {self.kind.value} - {self.status.value}>"

    def to_dict(self, include_payload=False):
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "scheduled_at": format_datetime_utc(self.scheduled_at),
            "sent_at": format_datetime_utc(self.sent_at),
            "created_at": format_datetime_utc(self.created_at),
            "updated_at": format_datetime_utc(self.updated_at),
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "dedupe_key": self.dedupe_key,
            "subject_key": self.subject_key,
            "result": self.result,
        }
        if include_payload:
            data["payload"] = self.payload
        return data


class ExternalAccountLink(db.Model):
    """Links a local entity to its account on an external control panel."""
    __tablename__ = "external_account_links"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", "control_panel", name="_entity_panel_uc"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(16), nullable=False)  # 'customer' or 'hosting'
    entity_id = db.Column(db.Integer, nullable=False)
    control_panel = db.Column(db.String(32), nullable=False)
    external_id = db.Column(db.String(255), nullable=True)
    # created / updated / no_change, or owner_pending / website_pending mid-create
    last_outcome = db.Column(db.String(16), nullable=True)
    # Hosting only: stored as soon as the subscription exists, before the website
    subscription_id = db.Column(db.Integer, nullable=True)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    def __repr__(self):
        return f"<ExternalAccountLink {self.entity_type}:{self.entity_id} -> {self.control_panel}:{self.external_id}>"

    def to_dict(self):
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "control_panel": self.control_panel,
            "external_id": self.external_id,
            "last_outcome": self.last_outcome,
            "subscription_id": self.subscription_id,
            "last_synced_at": format_datetime_utc(self.last_synced_at),
            "last_error": self.last_error,
        }


class User(db.Model):
    """Back-office user for session authentication."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="USER")  # 'ADMIN' or 'USER'
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime, nullable=True)

    @property
    def is_admin(self):
        return self.role == "ADMIN"

    def __repr__(self):
        return f"<User {self.username} - {self.role}>"


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(32), nullable=True)
    company = db.Column(db.String(255), nullable=True)
    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    verification_token = db.Column(db.String(128), nullable=True, unique=True)

    def __repr__(self):
        return f"<Customer {self.id} - {self.email}>"


class Service(db.Model):
    """A billable domain, hosting or VPS service with an expiry date."""
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    service_type = db.Column(db.String(16), nullable=False)  # DOMAIN, HOSTING, VPS
    name = db.Column(db.String(255), nullable=False)  # domain name or plan name
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, SUSPENDED, CANCELLED
    expiry_date = db.Column(db.Date, nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    plan_external_id = db.Column(db.String(64), nullable=True)

    customer = db.relationship("Customer", backref="services")

    def __repr__(self):
        return f"<Service {self.service_type} {self.id} - {self.name}>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(32), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")  # DRAFT, SENT, PARTIAL, OVERDUE, PAID
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    customer = db.relationship("Customer")
    schedule = db.relationship("InvoiceSchedule", back_populates="invoice", uselist=False)

    def __repr__(self):
        return f"<Invoice {self.number} - {self.status}>"


class InvoiceSchedule(db.Model):
    """Recurring reminder cadence for one invoice."""
    __tablename__ = "invoice_schedules"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, unique=True)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    frequency = db.Column(db.String(20), nullable=False, default="monthly")
    interval_days = db.Column(db.Integer, nullable=True)  # only for 'custom'
    send_time = db.Column(db.String(8), nullable=True)  # "HH:MM" in business timezone
    start_date = db.Column(db.Date, nullable=True)
    days_before_due = db.Column(db.Integer, nullable=True)
    cc_accounting_team = db.Column(db.Boolean, nullable=False, default=False)
    last_sent_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    invoice = db.relationship("Invoice", back_populates="schedule")

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "enabled": self.enabled,
            "frequency": self.frequency,
            "interval_days": self.interval_days,
            "send_time": self.send_time,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "days_before_due": self.days_before_due,
            "cc_accounting_team": self.cc_accounting_team,
            "last_sent_at": format_datetime_utc(self.last_sent_at),
        }


class Setting(db.Model):
    """System settings stored as JSON blobs keyed by name."""
    __tablename__ = "settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(191), nullable=False, unique=True)
    value = db.Column(db.JSON, nullable=False, default=dict)

    @classmethod
    def get_value(cls, key, default=None):
        setting = cls.query.filter_by(key=key).first()
        if setting is None or not isinstance(setting.value, dict):
            return default if default is not None else {}
        return setting.value
