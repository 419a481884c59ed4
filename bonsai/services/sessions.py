"""
Widget session service.

Keeps a visiting browser and a WidgetSession row in correspondence, scoped
to one project. Callers pass the WidgetAccess returned by the widget guard.

Two requests racing on the same unknown session id can both create a
session; the guarantee is at least one session per visit.
"""
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bonsai.errors import AuthorizationError, NotFoundError, StoreError
from bonsai.middleware.auth import WidgetAccess
from bonsai.models.base import parse_uuid, utcnow
from bonsai.models.session import WidgetSession


def _parse_session_id(session_id) -> Optional[UUID]:
    if session_id in (None, ''):
        return None
    try:
        return parse_uuid(session_id)
    except (TypeError, ValueError):
        return None


def find_session(db: Session, session_id) -> WidgetSession:
    """
    Load a session by id.

    Raises:
        NotFoundError: Unknown or malformed session id
    """
    session_uuid = _parse_session_id(session_id)
    if session_uuid is None:
        raise NotFoundError('Session not found')

    session = db.query(WidgetSession).filter(WidgetSession.id == session_uuid).first()
    if session is None:
        raise NotFoundError('Session not found')
    return session


def ensure_session_access(session: WidgetSession, access: WidgetAccess) -> WidgetSession:
    """
    Check a session belongs to the authorized project.

    Raises:
        AuthorizationError: The session belongs to another project
    """
    if session.project_id != access.project_id:
        raise AuthorizationError('Session does not belong to this project')
    return session


def open_or_validate(
    db: Session,
    access: WidgetAccess,
    session_id=None,
    visitor_id: Optional[str] = None,
    device_type: Optional[str] = None,
    browser: Optional[str] = None,
    referrer: Optional[str] = None
) -> Tuple[WidgetSession, bool]:
    """
    Reuse the caller's session or start a new one.

    An existing session is reused only if it belongs to the authorized
    project. Anything else (no id, unknown id, another project's id) starts
    a new session, whose id the caller must hand back to the widget.

    Returns:
        Tuple of (session, created)

    Raises:
        StoreError: If the session cannot be written
    """
    session_uuid = _parse_session_id(session_id)

    try:
        if session_uuid is not None:
            existing = db.query(WidgetSession).filter(WidgetSession.id == session_uuid).first()
            if existing is not None and existing.project_id == access.project_id:
                existing.last_active_at = utcnow()
                db.commit()
                return existing, False

        session = WidgetSession(
            project_id=access.project_id,
            organization_id=access.organization_id,
            visitor_id=visitor_id,
            device_type=device_type,
            browser=browser,
            referrer=referrer,
            last_active_at=utcnow(),
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session, True

    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f'Failed to open session: {e}')


def close(db: Session, access: WidgetAccess, session_id) -> bool:
    """
    End a session.

    Closing an already-closed session is a no-op. The WHERE clause only
    matches open sessions, so the first close wins.

    Returns:
        True if this call closed the session

    Raises:
        NotFoundError: Unknown session
        AuthorizationError: Session of another project
    """
    session = ensure_session_access(find_session(db, session_id), access)

    try:
        result = db.execute(
            update(WidgetSession)
            .where(
                WidgetSession.id == session.id,
                WidgetSession.ended_at.is_(None)
            )
            .values(ended_at=utcnow()),
            execution_options={'synchronize_session': False}
        )
        db.commit()
        db.refresh(session)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f'Failed to close session: {e}')

    return result.rowcount > 0


def mark_converted(db: Session, session_id) -> None:
    """Set the converted flag. Never unsets it. The caller commits."""
    db.execute(
        update(WidgetSession)
        .where(WidgetSession.id == session_id)
        .values(converted=True),
        execution_options={'synchronize_session': False}
    )
