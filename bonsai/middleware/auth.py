"""
Authentication middleware.

Two schemes live here:

- the operator API uses a master API key in the X-API-Key header;
- widget traffic is authorized per project by WidgetGuard, which checks the
  organization's widget key and the request Origin and hands back a
  WidgetAccess. Session, event and conversion services require that object,
  so no widget-facing store call happens without passing the guard.
"""
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from flask import request, jsonify
from sqlalchemy.orm import Session

from bonsai.config import settings
from bonsai.errors import AuthorizationError, NotFoundError, ValidationError
from bonsai.models.base import parse_uuid
from bonsai.models.project import Organization, Project

logger = logging.getLogger(__name__)


def require_api_key(f: Callable) -> Callable:
    """
    Decorator to require API key authentication.

    Checks for X-API-Key header and validates against MASTER_API_KEY.

    Usage:
        @bp.route('/protected')
        @require_api_key
        def protected_route():
            return {'message': 'success'}

    Raises:
        401: If API key is missing or invalid
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-API-Key')

        if not api_key:
            return jsonify({
                'error': 'Missing API key',
                'message': 'X-API-Key header is required'
            }), 401

        if api_key != settings.master_api_key:
            return jsonify({
                'error': 'Invalid API key',
                'message': 'The provided API key is invalid'
            }), 401

        return f(*args, **kwargs)

    return decorated_function


def get_request_origin() -> Optional[str]:
    """Origin of the embedding page, falling back to the Referer header."""
    origin = request.headers.get('Origin')
    if origin:
        return origin
    referer = request.headers.get('Referer')
    if referer:
        parsed = urlparse(referer)
        if parsed.scheme and parsed.netloc:
            return f"{parsed.scheme}://{parsed.netloc}"
    return None


def _normalize_origin(value: str) -> Optional[str]:
    parsed = urlparse(value.strip())
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def origin_allowed(origin: Optional[str], allowed_origins: Optional[Iterable[str]]) -> bool:
    """
    Check an Origin against a project's allow-list.

    Entries that parse as absolute URLs are compared by scheme and host;
    anything else must equal the origin exactly. An empty allow-list
    allows every origin.
    """
    allowed = [a for a in (allowed_origins or []) if a]
    if not allowed:
        return True
    if not origin:
        return False

    request_origin = _normalize_origin(origin)
    for entry in allowed:
        if entry == '*':
            return True
        normalized = _normalize_origin(entry)
        if normalized is not None and request_origin is not None:
            if normalized == request_origin:
                return True
        elif entry == origin:
            return True
    return False


@dataclass(frozen=True)
class WidgetAccess:
    """Proof that a widget request passed the guard for one project."""

    project: Project
    organization: Organization
    credential: str  # 'widget_key' or 'origin'

    @property
    def project_id(self):
        return self.project.id

    @property
    def organization_id(self):
        return self.organization.id


class WidgetGuard:
    """Authorizes widget traffic for a project."""

    def __init__(self, enforce_origins: Optional[bool] = None):
        """
        Args:
            enforce_origins: Check Origin against allowed_origins. Defaults to
                settings.is_production at call time.
        """
        self._enforce_origins = enforce_origins

    @property
    def enforce_origins(self) -> bool:
        if self._enforce_origins is None:
            return settings.is_production
        return self._enforce_origins

    def load_project(self, db: Session, project_id) -> Project:
        try:
            project_uuid = parse_uuid(project_id)
        except (TypeError, ValueError):
            raise NotFoundError('Project not found')

        project = db.query(Project).filter(Project.id == project_uuid).first()
        if project is None:
            raise NotFoundError('Project not found')
        return project

    def authorize(
        self,
        db: Session,
        project_id,
        widget_key: Optional[str] = None,
        origin: Optional[str] = None,
        require_key: bool = True
    ) -> WidgetAccess:
        """
        Authorize a widget request against a project.

        Args:
            db: Database session
            project_id: Project the request claims to belong to
            widget_key: Widget key presented by the widget
            origin: Origin header of the request
            require_key: Reject requests that present no widget key

        Raises:
            NotFoundError: Unknown project
            AuthorizationError: Inactive organization, key mismatch or disallowed origin
        """
        project = self.load_project(db, project_id)
        return self.authorize_project(project, widget_key, origin, require_key)

    def authorize_project(
        self,
        project: Project,
        widget_key: Optional[str] = None,
        origin: Optional[str] = None,
        require_key: bool = True
    ) -> WidgetAccess:
        organization = project.organization

        if organization is None or not organization.is_active:
            logger.warning("Widget request for unavailable project %s", project.id)
            raise AuthorizationError('Project not available')

        credential = 'origin'
        if widget_key is not None or require_key:
            if not organization.check_widget_key(widget_key):
                logger.warning(
                    "Invalid widget key for project %s (origin=%s)", project.id, origin
                )
                raise AuthorizationError('Invalid widget key')
            credential = 'widget_key'

        if self.enforce_origins and not origin_allowed(origin, project.allowed_origins):
            logger.warning("Origin %s not allowed for project %s", origin, project.id)
            raise AuthorizationError('Origin not allowed')

        return WidgetAccess(project=project, organization=organization, credential=credential)


def require_fields(data: Optional[dict], *fields: str) -> dict:
    """
    Check a JSON body for required fields.

    Raises:
        ValidationError: If the body is missing or a field is absent/empty
    """
    if not data or not isinstance(data, dict):
        raise ValidationError('Request body is required')

    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return data


widget_guard = WidgetGuard()
