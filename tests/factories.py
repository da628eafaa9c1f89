"""Fake collaborators and row factories for the test suite."""
import threading
from datetime import date, timedelta

from outbound.auth.utils import hash_password
from outbound.datetime_utils import utcnow
from outbound.models import Customer, Invoice, InvoiceSchedule, Service, Task, TaskKind, TaskStatus, User, db
from outbound.senders import SendError, Sender


class FakeSender(Sender):
    """Records every call; fails the first `fail_times` calls (None = always) with `error`."""

    def __init__(self, fail_times=0, error=None, result=None):
        self.fail_times = fail_times
        self.error = error or SendError("boom")
        self.result = result
        self.calls = []
        self._lock = threading.Lock()

    def send(self, kind, payload):
        with self._lock:
            self.calls.append((kind, payload))
            attempt = len(self.calls)
        if self.fail_times is None or attempt <= self.fail_times:
            raise self.error
        return self.result


class FakeEnhance:
    """In-memory stand-in for EnhanceAPI that records mutating calls."""

    def __init__(self):
        self.customers = {}
        self.websites = {}
        self.mutations = []
        self.fail_with = None
        # method name -> exception raised on that method's next call only
        self.fail_once = {}
        self._next = 100

    def _id(self):
        self._next += 1
        return str(self._next)

    def _check(self, name=None):
        if self.fail_with is not None:
            raise self.fail_with
        if name in self.fail_once:
            raise self.fail_once.pop(name)

    def find_customer_by_email(self, email):
        self._check("find_customer_by_email")
        for customer in self.customers.values():
            if customer["ownerEmail"].lower() == email.lower():
                return dict(customer)
        return None

    def get_customer(self, org_id):
        self._check("get_customer")
        customer = self.customers.get(org_id)
        return dict(customer) if customer else None

    def create_customer(self, name):
        self._check("create_customer")
        org_id = self._id()
        self.customers[org_id] = {"id": org_id, "name": name, "ownerEmail": ""}
        self.mutations.append(("create_customer", org_id))
        return org_id

    def create_owner_login(self, org_id, email, name, password):
        self._check("create_owner_login")
        self.customers[org_id]["ownerEmail"] = email
        self.mutations.append(("create_owner_login", org_id))
        return self._id()

    def update_customer(self, org_id, **fields):
        self._check("update_customer")
        self.customers[org_id].update(fields)
        self.mutations.append(("update_customer", org_id))

    def create_subscription(self, org_id, plan_id):
        self._check("create_subscription")
        self.mutations.append(("create_subscription", org_id))
        return int(self._id())

    def get_website(self, org_id, website_id):
        self._check("get_website")
        website = self.websites.get(website_id)
        return dict(website) if website else None

    def find_website_by_domain(self, org_id, domain):
        self._check("find_website_by_domain")
        for website in self.websites.values():
            if website["orgId"] == org_id and website["domain"] == domain:
                return dict(website)
        return None

    def create_website(self, org_id, domain, subscription_id=None):
        self._check("create_website")
        website_id = self._id()
        self.websites[website_id] = {
            "id": website_id,
            "orgId": org_id,
            "domain": domain,
            "subscriptionId": subscription_id,
            "isSuspended": False,
        }
        self.mutations.append(("create_website", website_id))
        return website_id

    def update_website(self, org_id, website_id, **fields):
        self._check("update_website")
        self.websites[website_id].update(fields)
        self.mutations.append(("update_website", website_id))

    def mutation_names(self):
        return [name for name, _ in self.mutations]


def make_task(kind=TaskKind.NOTIFICATION_EMAIL, status=TaskStatus.PENDING, scheduled_at=None,
              created_at=None, retry_count=0, payload=None, **fields):
    created_at = created_at or utcnow()
    task = Task(
        kind=kind,
        status=status,
        payload=payload or {"to": "someone@example.com", "subject": "Hi", "html": "<p>Hi</p>"},
        scheduled_at=scheduled_at,
        retry_count=retry_count,
        created_at=created_at,
        updated_at=fields.pop("updated_at", created_at),
        **fields,
    )
    db.session.add(task)
    db.session.commit()
    return task


def reload(task):
    db.session.expire_all()
    return db.session.get(Task, task.id)


def make_customer(name="Nguyen Van A", email="a@example.com", **fields):
    customer = Customer(name=name, email=email, **fields)
    db.session.add(customer)
    db.session.commit()
    return customer


def make_service(customer, service_type="DOMAIN", name="example.com", expiry_date=None, status="ACTIVE", **fields):
    service = Service(
        service_type=service_type,
        name=name,
        expiry_date=expiry_date or date.today() + timedelta(days=365),
        status=status,
        customer_id=customer.id if customer else None,
        **fields,
    )
    db.session.add(service)
    db.session.commit()
    return service


def make_invoice(customer, number="INV-0001", issue_date=None, due_date=None, status="SENT", balance=100, **fields):
    issue_date = issue_date or date.today()
    invoice = Invoice(
        number=number,
        customer_id=customer.id,
        issue_date=issue_date,
        due_date=due_date or issue_date + timedelta(days=30),
        status=status,
        total=fields.pop("total", balance),
        balance=balance,
        **fields,
    )
    db.session.add(invoice)
    db.session.commit()
    return invoice


def make_schedule(invoice, frequency="monthly", **fields):
    fields.setdefault("enabled", True)
    fields.setdefault("cc_accounting_team", False)
    schedule = InvoiceSchedule(invoice_id=invoice.id, frequency=frequency, **fields)
    db.session.add(schedule)
    db.session.commit()
    return schedule


def make_user(username="admin", password="secret", role="ADMIN"):
    user = User(username=username, password_hash=hash_password(password), role=role)
    db.session.add(user)
    db.session.commit()
    return user
