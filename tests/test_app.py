"""Tests for the app factory, database and logging setup, the background scheduler gate and the CLIs."""
import json
import re
import threading

import pytest
import structlog

from outbound import create_app, init_scheduler
from outbound.db_config import LOCAL_SQLITE_URL, get_database_uri, get_engine_options
from outbound.logging_config import BatchContext
from outbound.models import TaskStatus
from outbound.pipeline import EXTENSION_KEY, get_dispatcher, get_sync_coordinator
from outbound.scripts import drain_queue

from factories import make_task, reload


class TestErrorHandling:

    def test_unknown_route_returns_json(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.get_json()["success"] is False


class TestInitScheduler:

    def test_disabled_by_config(self, app):
        app.config["SCHEDULER_ENABLED"] = False
        assert init_scheduler(app) is None

    def test_skipped_outside_scheduler_worker(self, app, monkeypatch):
        monkeypatch.delenv("WERKZEUG_RUN_MAIN", raising=False)
        monkeypatch.delenv("IS_SCHEDULER_WORKER", raising=False)
        app.config["SCHEDULER_ENABLED"] = True
        assert init_scheduler(app) is None

    def test_registers_jobs_on_scheduler_worker(self, app, monkeypatch):
        monkeypatch.setenv("IS_SCHEDULER_WORKER", "1")
        app.config["SCHEDULER_ENABLED"] = True

        scheduler = init_scheduler(app)
        try:
            job_ids = sorted(job.id for job in scheduler.get_jobs())
            assert job_ids == ["dispatch_tasks", "reclaim_stale_tasks", "schedule_notifications"]
        finally:
            scheduler.shutdown(wait=False)


class TestDrainQueue:

    @pytest.mark.parametrize("argv", [["--limit", "0"], ["--rounds", "0"]])
    def test_rejects_non_positive_values(self, argv):
        with pytest.raises(SystemExit):
            drain_queue.parse_args(argv)

    def test_drains_and_prints_report(self, app, services, email_sender, monkeypatch, capsys):
        monkeypatch.setattr("outbound.create_app", lambda overrides=None: app)
        tasks = [make_task() for _ in range(3)]

        exit_code = drain_queue.main(["--limit", "2", "--rounds", "5", "--sweep"])

        assert exit_code == 0
        out = capsys.readouterr().out
        # log lines share stdout; the report is the indented JSON block at the end
        report = json.loads(out[re.search(r"(?m)^\{$", out).start():])
        assert report["reclaimed"] == 0
        assert report["dispatch"]["processed"] == 3
        assert all(reload(t).status == TaskStatus.SENT for t in tasks)
        assert len(email_sender.calls) == 3


class TestInitDb:

    def test_creates_admin_once(self, app):
        from outbound.models import User
        from outbound.scripts.init_db import init_db

        first = init_db("ops", "pw123")
        second = init_db("ops", "other")

        assert first["admin_created"] is True
        assert second["admin_created"] is False
        assert second["tables_created"] == []
        assert User.query.filter_by(username="ops").one().is_admin

    def test_username_and_password_go_together(self):
        from outbound.scripts.init_db import parse_args

        with pytest.raises(SystemExit):
            parse_args(["--admin-username", "ops"])


class TestDatabaseConfig:

    def test_postgres_scheme_is_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.internal:5432/hostdesk")
        assert get_database_uri("production") == "postgresql://u:p@db.internal:5432/hostdesk"

    def test_deployed_environment_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(ValueError):
            get_database_uri("production")

    def test_local_falls_back_to_sqlite_file(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_uri("local") == LOCAL_SQLITE_URL

    def test_test_environment_ignores_database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://prod/hostdesk")
        monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
        assert get_database_uri("test") == "sqlite:///:memory:"

    def test_sqlite_has_no_engine_options(self):
        assert get_engine_options("sqlite:///:memory:", dispatch_workers=8) is None

    def test_pool_overflow_grows_with_dispatch_workers(self):
        small = get_engine_options("postgresql://db/hostdesk", dispatch_workers=1)
        large = get_engine_options("postgresql://db/hostdesk", dispatch_workers=12)

        assert large["max_overflow"] - small["max_overflow"] == 11
        assert large["pool_pre_ping"] is True
        assert large["connect_args"]["application_name"] == "hostdesk_outbound"

    def test_app_overrides_win(self, app):
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite:///:memory:"
        assert "SQLALCHEMY_ENGINE_OPTIONS" not in app.config


class TestPipelineServices:

    def test_services_are_built_by_the_factory(self):
        app = create_app({"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
        services = app.extensions[EXTENSION_KEY]

        with app.app_context():
            assert get_dispatcher() is services["dispatcher"]
            assert get_sync_coordinator().dispatcher is services["dispatcher"]

    def test_concurrent_first_access_builds_one_dispatcher(self):
        app = create_app({"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
        del app.extensions[EXTENSION_KEY]
        seen = []
        start = threading.Barrier(8)

        def worker():
            with app.app_context():
                start.wait()
                seen.append(get_dispatcher())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(seen) == 8
        assert len({id(dispatcher) for dispatcher in seen}) == 1


class TestBatchContext:

    def test_operation_id_is_bound_only_for_the_run(self):
        with BatchContext("dispatch", operation_id="abc123"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["operation_id"] == "abc123"
            assert bound["operation_type"] == "dispatch"

        assert "operation_id" not in structlog.contextvars.get_contextvars()

    def test_exceptions_propagate_and_context_is_reset(self):
        with pytest.raises(RuntimeError):
            with BatchContext("sweep"):
                raise RuntimeError("boom")

        assert "operation_id" not in structlog.contextvars.get_contextvars()
