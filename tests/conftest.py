"""
Shared fixtures: an app on in-memory SQLite with the pipeline wired to fake
senders and a fake control-panel client.
"""
import os

os.environ["FLASK_ENV"] = "test"

import pytest

from outbound import create_app
from outbound.models import db
from outbound.pipeline import EXTENSION_KEY, build_services

from factories import FakeEnhance, FakeSender, make_user


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app({"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def email_sender():
    return FakeSender()


@pytest.fixture
def enhance():
    return FakeEnhance()


@pytest.fixture
def services(app, email_sender, enhance):
    """Pipeline services wired to the fakes and installed on the app."""
    services = build_services(app.config, email_sender=email_sender, client_factory=lambda: enhance)
    app.extensions[EXTENSION_KEY] = services
    return services


@pytest.fixture
def dispatcher(services):
    return services["dispatcher"]


@pytest.fixture
def coordinator(services):
    return services["coordinator"]


@pytest.fixture
def scheduler(services):
    return services["scheduler"]


@pytest.fixture
def admin_client(client):
    """Test client with an ADMIN session."""
    user = make_user()
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
    return client


@pytest.fixture
def user_client(client):
    """Test client with a non-admin session."""
    user = make_user(username="staff", role="USER")
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
    return client
