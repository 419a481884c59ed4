"""
Tests for the session service.
"""
import uuid

import pytest

from bonsai.errors import AuthorizationError, NotFoundError
from bonsai.middleware.auth import WidgetGuard
from bonsai.models import Organization, Project, WidgetSession
from bonsai.services import sessions


@pytest.fixture
def other_access(db):
    """Guard result for a second, unrelated project."""
    org = Organization(name='Other Org')
    org.widget_key = 'other-key'
    db.add(org)
    db.flush()
    project = Project(organization_id=org.id, name='Other project')
    db.add(project)
    db.commit()
    return WidgetGuard(enforce_origins=False).authorize_project(project, widget_key='other-key')


class TestOpenOrValidate:
    """Test session creation and reuse."""

    def test_creates_session_without_id(self, db, access):
        session, created = sessions.open_or_validate(
            db, access, visitor_id='v-1', device_type='mobile', browser='Firefox'
        )

        assert created is True
        assert session.project_id == access.project_id
        assert session.organization_id == access.organization_id
        assert session.visitor_id == 'v-1'
        assert session.device_type == 'mobile'
        assert session.ended_at is None
        assert session.converted is False

    def test_reuses_session_of_same_project(self, db, access, widget_session):
        session, created = sessions.open_or_validate(db, access, session_id=str(widget_session.id))

        assert created is False
        assert session.id == widget_session.id
        assert session.last_active_at is not None

    def test_unknown_id_creates_new_session(self, db, access):
        unknown = str(uuid.uuid4())

        session, created = sessions.open_or_validate(db, access, session_id=unknown)

        assert created is True
        assert str(session.id) != unknown

    def test_malformed_id_creates_new_session(self, db, access):
        session, created = sessions.open_or_validate(db, access, session_id='not-a-uuid')

        assert created is True

    def test_session_of_other_project_not_reused(self, db, access, other_access):
        foreign, _ = sessions.open_or_validate(db, other_access)

        session, created = sessions.open_or_validate(db, access, session_id=str(foreign.id))

        assert created is True
        assert session.id != foreign.id
        assert session.project_id == access.project_id


class TestFindSession:
    """Test session lookup."""

    def test_found(self, db, widget_session):
        assert sessions.find_session(db, str(widget_session.id)).id == widget_session.id

    def test_unknown(self, db):
        with pytest.raises(NotFoundError):
            sessions.find_session(db, str(uuid.uuid4()))

    def test_malformed(self, db):
        with pytest.raises(NotFoundError):
            sessions.find_session(db, 'nope')

    def test_access_check(self, db, widget_session, other_access):
        with pytest.raises(AuthorizationError):
            sessions.ensure_session_access(widget_session, other_access)


class TestCloseSession:
    """Test ending sessions."""

    def test_close_sets_ended_at(self, db, access, widget_session):
        assert sessions.close(db, access, widget_session.id) is True

        db.expire_all()
        assert db.get(WidgetSession, widget_session.id).ended_at is not None

    def test_loaded_session_sees_end(self, db, access, widget_session):
        """The caller's own object reflects the close without a reload."""
        sessions.close(db, access, widget_session.id)

        assert widget_session.ended_at is not None

    def test_second_close_is_noop(self, db, access, widget_session):
        sessions.close(db, access, widget_session.id)
        db.expire_all()
        first_end = db.get(WidgetSession, widget_session.id).ended_at

        assert sessions.close(db, access, widget_session.id) is False

        db.expire_all()
        assert db.get(WidgetSession, widget_session.id).ended_at == first_end

    def test_close_other_projects_session_rejected(self, db, widget_session, other_access):
        with pytest.raises(AuthorizationError):
            sessions.close(db, other_access, widget_session.id)


class TestMarkConverted:
    """Test the converted flag."""

    def test_flag_is_set(self, db, widget_session):
        sessions.mark_converted(db, widget_session.id)
        db.commit()
        db.expire_all()

        assert db.get(WidgetSession, widget_session.id).converted is True
