"""
Tests for the HTTP surfaces: cron triggers, admin endpoints, customer
verification and session auth.
"""
from datetime import timedelta

import pytest

from outbound.datetime_utils import utcnow
from outbound.models import Customer, InvoiceSchedule, Task, TaskKind, TaskStatus, db

from factories import make_customer, make_invoice, make_service, make_task, make_user, reload

CRON_TOKEN = "test-cron-secret"


# ==============================================================================
# Cron triggers
# ==============================================================================

class TestCronAuth:

    @pytest.mark.parametrize("path", ["/api/cron/schedule", "/api/cron/dispatch", "/api/cron/sweep"])
    def test_missing_token_is_rejected(self, client, services, path):
        response = client.post(path)
        assert response.status_code == 401
        assert response.get_json()["success"] is False

    def test_wrong_token_is_rejected(self, client, services):
        response = client.post("/api/cron/dispatch", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_unconfigured_secret_rejects_everything(self, app, client, services):
        app.config["CRON_SECRET"] = None
        response = client.post("/api/cron/dispatch", headers={"Authorization": "Bearer "})
        assert response.status_code == 401

    def test_bearer_header(self, client, services):
        response = client.post("/api/cron/dispatch", headers={"Authorization": f"Bearer {CRON_TOKEN}"})
        assert response.status_code == 200

    def test_query_token_and_get(self, client, services):
        response = client.get(f"/api/cron/dispatch?token={CRON_TOKEN}")
        assert response.status_code == 200

    def test_non_ascii_token_is_rejected_not_an_error(self, client, services):
        response = client.get("/api/cron/dispatch?token=%C3%A9")
        assert response.status_code == 401

        response = client.post("/api/cron/dispatch", headers={"Authorization": "Bearer caf\u00e9"})
        assert response.status_code == 401


class TestCronTriggers:

    def test_dispatch_reports_batch(self, client, services, email_sender):
        make_task()
        make_task()

        response = client.post(f"/api/cron/dispatch?token={CRON_TOKEN}&limit=1")

        body = response.get_json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["limit"] == 1
        assert body["processed"] == 1
        assert body["claimed"] == 1
        assert len(email_sender.calls) == 1

    def test_limit_is_clamped(self, client, services):
        response = client.post(f"/api/cron/dispatch?token={CRON_TOKEN}&limit=5000")
        assert response.get_json()["limit"] == 50

    @pytest.mark.parametrize("limit", ["0", "-3", "ten"])
    def test_invalid_limit(self, client, services, limit):
        response = client.post(f"/api/cron/dispatch?token={CRON_TOKEN}&limit={limit}")
        assert response.status_code == 400

    def test_schedule_reports_summary(self, client, services):
        customer = make_customer()
        make_service(customer, expiry_date=utcnow().date() - timedelta(days=2))

        response = client.post(f"/api/cron/schedule?token={CRON_TOKEN}")

        body = response.get_json()
        assert response.status_code == 200
        assert body["expired"] == 1
        assert Task.query.count() == 1

    def test_sweep(self, client, services):
        make_task(status=TaskStatus.SENDING, updated_at=utcnow() - timedelta(hours=2))

        response = client.post(f"/api/cron/sweep?token={CRON_TOKEN}")

        assert response.get_json()["reclaimed"] == 1


# ==============================================================================
# Admin endpoints
# ==============================================================================

class TestAdminAuth:

    def test_requires_session(self, client, services):
        assert client.get("/api/admin/tasks/stats").status_code == 401

    def test_requires_admin_role(self, user_client, services):
        assert user_client.get("/api/admin/tasks/stats").status_code == 403

    def test_cron_token_does_not_open_admin_routes(self, client, services):
        response = client.post("/api/admin/tasks/dispatch", headers={"Authorization": f"Bearer {CRON_TOKEN}"})
        assert response.status_code == 401


class TestAdminTasks:

    def test_manual_dispatch_accepts_json_limit(self, admin_client, services):
        for _ in range(3):
            make_task()

        response = admin_client.post("/api/admin/tasks/dispatch", json={"limit": 2})

        assert response.get_json()["processed"] == 2

    def test_manual_schedule(self, admin_client, services):
        response = admin_client.post("/api/admin/tasks/schedule")
        assert response.status_code == 200
        assert response.get_json()["success"] is True

    def test_stats(self, admin_client, services):
        make_task()
        make_task(status=TaskStatus.DEAD)
        make_task(kind=TaskKind.CONTROL_PANEL_SYNC, status=TaskStatus.DEAD)

        body = admin_client.get("/api/admin/tasks/stats").get_json()
        assert body["counts"]["DEAD"] == 2
        assert body["due"] == 1

        body = admin_client.get("/api/admin/tasks/stats?kind=control_panel_sync").get_json()
        assert body["counts"]["DEAD"] == 1
        assert body["kind"] == "control_panel_sync"

    def test_stats_unknown_kind(self, admin_client, services):
        assert admin_client.get("/api/admin/tasks/stats?kind=fax").status_code == 400

    def test_list_filters_by_status(self, admin_client, services):
        make_task(status=TaskStatus.FAILED, error_message="timeout")
        make_task(status=TaskStatus.SENT)

        body = admin_client.get("/api/admin/tasks?status=FAILED").get_json()

        assert body["pagination"]["total"] == 1
        assert body["tasks"][0]["status"] == "FAILED"
        assert body["tasks"][0]["error_message"] == "timeout"

    def test_retry_dead_task(self, admin_client, services, email_sender):
        task = make_task(status=TaskStatus.DEAD, retry_count=3)

        response = admin_client.post(f"/api/admin/tasks/{task.id}/retry")

        assert response.status_code == 200
        assert response.get_json()["outcome"]["status"] == "SENT"
        assert reload(task).status == TaskStatus.SENT

    def test_retry_missing_task(self, admin_client, services):
        assert admin_client.post("/api/admin/tasks/999/retry").status_code == 404

    def test_retry_sent_task_conflicts(self, admin_client, services, email_sender):
        task = make_task(status=TaskStatus.SENT)

        response = admin_client.post(f"/api/admin/tasks/{task.id}/retry")

        assert response.status_code == 409
        assert email_sender.calls == []

    def test_cancel(self, admin_client, services):
        task = make_task(status=TaskStatus.FAILED)

        response = admin_client.post(f"/api/admin/tasks/{task.id}/cancel")

        assert response.status_code == 200
        assert reload(task).status == TaskStatus.CANCELLED
        assert admin_client.post(f"/api/admin/tasks/{task.id}/cancel").status_code == 409


class TestAdminSync:

    def test_queue_sync(self, admin_client, services):
        customer = make_customer()

        response = admin_client.post(f"/api/admin/sync/customer/{customer.id}")

        assert response.status_code == 202
        assert response.get_json()["queued"] is True
        again = admin_client.post(f"/api/admin/sync/customer/{customer.id}").get_json()
        assert again["queued"] is False

    def test_immediate_sync(self, admin_client, services, enhance):
        customer = make_customer()

        response = admin_client.post(f"/api/admin/sync/customer/{customer.id}", json={"immediate": True})

        body = response.get_json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["outcome"]["result"]["action"] == "created"
        assert "create_customer" in enhance.mutation_names()

    def test_unknown_entity_type(self, admin_client, services):
        assert admin_client.post("/api/admin/sync/invoice/1").status_code == 400

    def test_sync_stats(self, admin_client, services):
        make_task(kind=TaskKind.CONTROL_PANEL_SYNC, status=TaskStatus.FAILED)

        body = admin_client.get("/api/admin/sync/stats").get_json()

        assert body["failed"] == 1
        assert body["due"] == 1


class TestAdminInvoiceSchedule:

    def test_create_with_defaults(self, admin_client, services):
        invoice = make_invoice(make_customer())

        response = admin_client.post(f"/api/admin/invoices/{invoice.id}/schedule", json={"send_time": "09:30"})

        assert response.status_code == 200
        schedule = InvoiceSchedule.query.filter_by(invoice_id=invoice.id).one()
        assert schedule.enabled is True
        assert schedule.frequency == "monthly"
        assert schedule.send_time == "09:30"

    def test_update_existing(self, admin_client, services):
        invoice = make_invoice(make_customer())
        admin_client.post(f"/api/admin/invoices/{invoice.id}/schedule", json={})

        admin_client.post(
            f"/api/admin/invoices/{invoice.id}/schedule",
            json={"frequency": "custom", "interval_days": 10, "enabled": False},
        )

        schedule = InvoiceSchedule.query.filter_by(invoice_id=invoice.id).one()
        assert schedule.frequency == "custom"
        assert schedule.interval_days == 10
        assert schedule.enabled is False

    @pytest.mark.parametrize("payload", [
        {"frequency": "hourly"},
        {"frequency": "custom"},
        {"send_time": "9am"},
        {"start_date": "01/02/2025"},
        {"days_before_due": -1},
    ])
    def test_validation(self, admin_client, services, payload):
        invoice = make_invoice(make_customer())
        response = admin_client.post(f"/api/admin/invoices/{invoice.id}/schedule", json=payload)
        assert response.status_code == 400
        assert InvoiceSchedule.query.count() == 0

    def test_missing_invoice(self, admin_client, services):
        assert admin_client.post("/api/admin/invoices/999/schedule", json={}).status_code == 404


# ==============================================================================
# Customer verification
# ==============================================================================

class TestCustomerVerify:

    def test_verify_queues_email_and_sync(self, client, services):
        customer = make_customer(verification_token="tok-123")

        response = client.get("/api/customers/verify?token=tok-123")

        body = response.get_json()
        assert response.status_code == 200
        assert body["sync_queued"] is True
        customer = db.session.get(Customer, customer.id)
        assert customer.email_verified is True
        assert customer.verification_token is None
        kinds = sorted(t.kind.value for t in Task.query.all())
        assert kinds == ["control_panel_sync", "notification_email"]

    def test_verify_does_not_call_control_panel_inline(self, client, services, enhance, email_sender):
        make_customer(verification_token="tok-123")

        client.get("/api/customers/verify?token=tok-123")

        assert enhance.mutations == []
        assert email_sender.calls == []

    def test_missing_token(self, client, services):
        assert client.get("/api/customers/verify").status_code == 400

    def test_unknown_token(self, client, services):
        assert client.get("/api/customers/verify?token=nope").status_code == 404


# ==============================================================================
# Session auth
# ==============================================================================

class TestAuth:

    def test_login_me_logout(self, client):
        make_user(username="ops", password="pw123")

        response = client.post("/api/auth/login", json={"username": "ops", "password": "pw123"})
        assert response.status_code == 200
        assert client.get("/api/auth/me").get_json()["username"] == "ops"

        client.post("/api/auth/logout")
        assert client.get("/api/auth/me").status_code == 401

    def test_bad_password(self, client):
        make_user(username="ops", password="pw123")
        response = client.post("/api/auth/login", json={"username": "ops", "password": "wrong"})
        assert response.status_code == 401

    def test_health(self, client):
        assert client.get("/health").status_code == 200
