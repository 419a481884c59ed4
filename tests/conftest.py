"""
Test configuration and shared fixtures.

This module provides pytest fixtures used across all test modules.
"""
import os
from types import SimpleNamespace
from datetime import timedelta

import pytest

# Set test environment variables before importing the app
os.environ['FLASK_ENV'] = 'testing'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['MASTER_API_KEY'] = 'test-master-api-key'
os.environ['FERNET_KEY'] = 'K8JbF7YzQ_8qPjQ8_K8JbF7YzQ_8qPjQ8_K8JbF7YzQ='
os.environ['SECRET_KEY'] = 'test-secret-key'

from bonsai import create_app
from bonsai.middleware.auth import WidgetGuard
from bonsai.models import base
from bonsai.models.base import utcnow
from bonsai.models import (
    Base, Organization, Project, Video, Slot, SlotTransition, ConversionRule, WidgetSession
)
from tests.fixtures.test_data import ALLOWED_ORIGIN, WIDGET_KEY


@pytest.fixture(scope='session')
def app():
    """
    Create Flask app for testing.

    The database is sqlite:///:memory: on a single shared connection, so
    the app's sessions and the test's session see the same data.
    """
    app = create_app({
        'TESTING': True,
        'DEBUG': False
    })

    yield app


@pytest.fixture(scope='session')
def _db(app):
    """Create all tables once per test run."""
    Base.metadata.create_all(bind=base.engine)

    yield base.engine

    Base.metadata.drop_all(bind=base.engine)


@pytest.fixture(scope='function')
def db(_db):
    """
    Provide a database session.

    Routes commit through their own sessions, so every table is emptied
    after each test instead of rolling back.

    Yields:
        Database session
    """
    session = base.SessionLocal()

    yield session

    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture(scope='function')
def client(app, db):
    """Provide Flask test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def auth_headers():
    """Headers for the operator API."""
    return {'X-API-Key': 'test-master-api-key'}


@pytest.fixture(scope='function')
def production(monkeypatch):
    """Run the test as if in production, so origins are enforced."""
    from bonsai.config import settings
    monkeypatch.setattr(settings, 'flask_env', 'production')


@pytest.fixture(scope='function')
def organization(db):
    """An active organization with a known widget key."""
    org = Organization(name='Acme Videos', status='active')
    org.widget_key = WIDGET_KEY

    db.add(org)
    db.commit()
    db.refresh(org)

    return org


@pytest.fixture(scope='function')
def project(db, organization):
    """A project that allows one origin."""
    project = Project(
        organization_id=organization.id,
        name='Spring launch',
        allowed_origins=[ALLOWED_ORIGIN],
    )

    db.add(project)
    db.commit()
    db.refresh(project)

    return project


@pytest.fixture(scope='function')
def access(project):
    """Guard result for the project, as a widget with the right key gets it."""
    return WidgetGuard(enforce_origins=False).authorize_project(project, widget_key=WIDGET_KEY)


@pytest.fixture(scope='function')
def graph(db, project):
    """
    A three-slot project graph.

        intro --auto--------------> products --auto--> checkout
        intro --click-------------> checkout
        intro --time(5s), prio 1--> checkout

    Returns:
        Namespace with videos, slots and transitions
    """
    videos = {}
    for key, title in (('intro', 'Intro'), ('products', 'Products'), ('checkout', 'Checkout')):
        video = Video(
            project_id=project.id,
            title=title,
            storage_path=f'org/{project.id}/{key}.mp4',
            duration_ms=30000,
            status='ready',
        )
        db.add(video)
        videos[key] = video
    db.flush()

    created = utcnow()
    intro = Slot(
        project_id=project.id, video_id=videos['intro'].id, name='Intro', is_entry_point=True,
        created_at=created - timedelta(seconds=3),
        detail_button_text='Learn more', detail_button_url='https://shop.example.com/about',
    )
    db.add(intro)
    db.flush()
    products = Slot(
        project_id=project.id, video_id=videos['products'].id, name='Products',
        created_at=created - timedelta(seconds=2),
    )
    db.add(products)
    db.flush()
    checkout = Slot(
        project_id=project.id, video_id=videos['checkout'].id, name='Checkout',
        created_at=created - timedelta(seconds=1),
        cta_button_text='Buy now', cta_button_url='https://shop.example.com/checkout',
    )
    db.add(checkout)
    db.flush()

    transitions = SimpleNamespace(
        intro_auto=SlotTransition(
            from_slot_id=intro.id, to_slot_id=products.id, trigger_type='auto', priority=0
        ),
        intro_click=SlotTransition(
            from_slot_id=intro.id, to_slot_id=checkout.id, trigger_type='click', priority=0
        ),
        intro_time=SlotTransition(
            from_slot_id=intro.id, to_slot_id=checkout.id, trigger_type='time',
            trigger_config={'time_sec': 5}, priority=1
        ),
        products_auto=SlotTransition(
            from_slot_id=products.id, to_slot_id=checkout.id, trigger_type='auto', priority=0
        ),
    )
    for transition in vars(transitions).values():
        db.add(transition)

    db.commit()

    return SimpleNamespace(
        project=project,
        videos=SimpleNamespace(**videos),
        intro=intro,
        products=products,
        checkout=checkout,
        transitions=transitions,
    )


@pytest.fixture(scope='function')
def widget_session(db, project, organization):
    """An open session on the project."""
    session = WidgetSession(
        project_id=project.id,
        organization_id=organization.id,
        visitor_id='visitor-1',
    )

    db.add(session)
    db.commit()
    db.refresh(session)

    return session


@pytest.fixture(scope='function')
def checkout_rule(db, graph):
    """Converts when the checkout slot is reached."""
    rule = ConversionRule(
        project_id=graph.project.id,
        name='Reached checkout',
        event_type='slot_reached',
        condition={'slot_id': str(graph.checkout.id)},
    )

    db.add(rule)
    db.commit()
    db.refresh(rule)

    return rule
