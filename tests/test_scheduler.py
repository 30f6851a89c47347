import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.extensions import db
from opshub.models import BoardPresence, DesignBoard, User
from opshub.services import scheduler as scheduler_service
from opshub.services.presence import upsert_presence


class FakeScheduler:
    def __init__(self, timezone=None):
        self.timezone = timezone
        self.jobs = []
        self.started = False

    def add_job(self, func, **kwargs):
        self.jobs.append((func, kwargs))

    def start(self):
        self.started = True


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


def test_testing_apps_do_not_start_the_scheduler(app):
    assert "presence_scheduler" not in app.extensions


def test_initialize_registers_prune_job(app, monkeypatch):
    monkeypatch.setattr(scheduler_service, "BackgroundScheduler", FakeScheduler)
    app.config["PRESENCE_PRUNE_INTERVAL_SECONDS"] = 30

    scheduler = scheduler_service.initialize_presence_scheduler(app)

    assert scheduler.started is True
    assert scheduler.timezone == "UTC"
    (func, options), = scheduler.jobs
    assert func is scheduler_service.run_presence_prune
    assert options["id"] == scheduler_service.PRESENCE_PRUNE_JOB_ID
    assert options["args"] == [app]
    assert scheduler_service.initialize_presence_scheduler(app) is scheduler


def test_zero_interval_disables_scheduler(app, monkeypatch):
    monkeypatch.setattr(scheduler_service, "BackgroundScheduler", FakeScheduler)
    app.config["PRESENCE_PRUNE_INTERVAL_SECONDS"] = 0

    assert scheduler_service.initialize_presence_scheduler(app) is None
    assert "presence_scheduler" not in app.extensions


def test_run_presence_prune_deactivates_stale_rows(app):
    with app.app_context():
        user = User(username="owner", email="owner@example.com")
        user.set_password("password")
        db.session.add(user)
        db.session.flush()
        board = DesignBoard(name="Lobby", settings={}, created_by=user.id)
        db.session.add(board)
        db.session.commit()
        row = upsert_presence(board.id, user.id, {})
        row.last_seen = datetime.utcnow() - timedelta(hours=1)
        db.session.commit()

    assert scheduler_service.run_presence_prune(app) == 1

    with app.app_context():
        assert BoardPresence.query.filter_by(is_active=True).count() == 0
