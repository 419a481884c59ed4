"""
Conversion evaluation service.

After a qualifying event is written, the project's active conversion rules
for that event type are checked against it. Each matching rule adds one
conversion row (no per-session dedup) and flips the session's converted
flag, which never goes back to false.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy.orm import Session

from bonsai.errors import NotFoundError
from bonsai.middleware.auth import WidgetAccess
from bonsai.models.base import parse_uuid
from bonsai.models.project import ConversionRule, CONDITION_ALIASES
from bonsai.models.session import ConversionEvent
from bonsai.services.sessions import mark_converted

logger = logging.getLogger(__name__)

# Which rule event types an incoming event kind can satisfy
RULE_TYPES_FOR_EVENT: Dict[str, Tuple[str, ...]] = {
    'slot_reached': ('slot_reached',),
    'video_completed': ('video_completed',),
    'video_view': ('video_view',),
    'click': ('click', 'cta_clicked'),
}


@dataclass(frozen=True)
class EventFacts:
    """The parts of an event a rule condition can constrain."""

    slot_id: Optional[UUID] = None
    video_id: Optional[UUID] = None
    destination_url: Optional[str] = None
    button_type: Optional[str] = None

    @classmethod
    def from_payload(cls, payload) -> "EventFacts":
        return cls(
            slot_id=getattr(payload, 'slot_id', None),
            video_id=getattr(payload, 'video_id', None),
            destination_url=getattr(payload, 'destination_url', None),
            button_type=getattr(payload, 'button_type', None),
        )


def _split_origin_path(url: str) -> Optional[Tuple[str, str]]:
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return None
    origin = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    return origin, parsed.path.rstrip('/')


def url_matches(pattern: str, url: Optional[str]) -> bool:
    """
    Match a click's destination URL against a rule's url_pattern.

    An absolute-URL pattern matches on origin, and on path too when the
    pattern has one. Any other pattern is a substring match.
    """
    if not url:
        return False

    pattern_parts = _split_origin_path(pattern)
    if pattern_parts is None:
        return pattern in url

    url_parts = _split_origin_path(url)
    if url_parts is None:
        return False

    pattern_origin, pattern_path = pattern_parts
    url_origin, url_path = url_parts
    if pattern_origin != url_origin:
        return False
    return not pattern_path or pattern_path == url_path


def _condition(rule: ConversionRule) -> Dict[str, str]:
    return {
        CONDITION_ALIASES.get(key, key): str(value)
        for key, value in (rule.condition or {}).items()
        if value not in (None, '')
    }


def _same_id(expected: str, actual: Optional[UUID]) -> bool:
    """Compare a stored condition id with an event id in canonical UUID form."""
    if actual is None:
        return False
    try:
        return parse_uuid(expected) == parse_uuid(actual)
    except ValueError:
        return False


def rule_matches(rule: ConversionRule, facts: EventFacts) -> bool:
    """Every constraint present in the rule's condition must match the event."""
    if rule.event_type == 'cta_clicked' and facts.button_type != 'cta':
        return False

    condition = _condition(rule)

    slot_id = condition.get('slot_id')
    if slot_id is not None and not _same_id(slot_id, facts.slot_id):
        return False

    video_id = condition.get('video_id')
    if video_id is not None and not _same_id(video_id, facts.video_id):
        return False

    url_pattern = condition.get('url_pattern')
    if url_pattern is not None and not url_matches(url_pattern, facts.destination_url):
        return False

    return True


def active_rules(db: Session, project_id, rule_types) -> List[ConversionRule]:
    return db.query(ConversionRule).filter(
        ConversionRule.project_id == project_id,
        ConversionRule.is_active.is_(True),
        ConversionRule.event_type.in_(rule_types)
    ).order_by(ConversionRule.created_at.asc(), ConversionRule.id.asc()).all()


def evaluate(
    db: Session,
    access: WidgetAccess,
    session_id,
    event_kind: str,
    facts: EventFacts,
    source_event_id=None
) -> List[ConversionEvent]:
    """
    Record a conversion for every active rule the event satisfies.

    Args:
        db: Database session
        access: Guard result for the event's project
        session_id: Session the event belongs to
        event_kind: Event type that was just recorded
        facts: Slot/video/URL facts of the event
        source_event_id: Id of the event row that triggered evaluation

    Returns:
        The conversion rows written (empty when nothing matched)
    """
    rule_types = RULE_TYPES_FOR_EVENT.get(event_kind)
    if not rule_types:
        return []

    matched = [
        rule for rule in active_rules(db, access.project_id, rule_types)
        if rule_matches(rule, facts)
    ]
    if not matched:
        return []

    conversions = []
    for rule in matched:
        conversion = ConversionEvent(
            session_id=session_id,
            project_id=access.project_id,
            rule_id=rule.id,
            slot_id=facts.slot_id,
            video_id=facts.video_id,
            source_event_id=source_event_id,
        )
        db.add(conversion)
        conversions.append(conversion)

    mark_converted(db, session_id)
    db.commit()

    logger.info(
        "Session %s converted on %s (%d rule(s))", session_id, event_kind, len(conversions)
    )
    return conversions


def record_explicit(
    db: Session,
    access: WidgetAccess,
    session_id,
    rule_id,
    facts: EventFacts,
    converted_at=None
) -> ConversionEvent:
    """
    Record a conversion the widget reports directly for a known rule.

    The caller commits.

    Raises:
        NotFoundError: The rule does not exist in this project
    """
    rule = db.query(ConversionRule).filter(
        ConversionRule.id == rule_id,
        ConversionRule.project_id == access.project_id
    ).first()
    if rule is None:
        raise NotFoundError('Conversion rule not found')

    conversion = ConversionEvent(
        session_id=session_id,
        project_id=access.project_id,
        rule_id=rule.id,
        slot_id=facts.slot_id,
        video_id=facts.video_id,
    )
    if converted_at is not None:
        conversion.converted_at = converted_at
    db.add(conversion)
    mark_converted(db, session_id)
    return conversion
