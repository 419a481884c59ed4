"""
Widget event service.

Each event kind has its own payload model; the incoming JSON is parsed into
exactly one of them (discriminated on event_type) before anything touches
the store. Recording then writes the event and, for kinds that can satisfy
conversion rules, runs the conversion evaluator. A failing evaluation is
logged and does not fail the event write.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter,
    ValidationError as PydanticValidationError
)
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bonsai.errors import NotFoundError, StoreError, ValidationError
from bonsai.middleware.auth import WidgetAccess
from bonsai.models.base import utcnow
from bonsai.models.project import ConversionRule, Slot, Video
from bonsai.models.session import ConversionEvent, SlotView, WidgetEvent, WidgetSession
from bonsai.services import conversions, sessions

logger = logging.getLogger(__name__)

# Kinds whose successful write triggers conversion evaluation
CONVERTING_KINDS = frozenset(conversions.RULE_TYPES_FOR_EVENT)

# Upper bound for one reported watch time; keeps played_ms inside an INTEGER column
MAX_WATCH_SECONDS = 24 * 60 * 60


class EventPayload(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    timestamp: Optional[str] = None


class WidgetOpenPayload(EventPayload):
    event_type: Literal['widget_open']
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


class SlotVideoPayload(EventPayload):
    slot_id: UUID = Field(validation_alias=AliasChoices('slot_id', 'slotId'))
    video_id: UUID = Field(validation_alias=AliasChoices('video_id', 'videoId'))


class VideoStartPayload(SlotVideoPayload):
    event_type: Literal['video_start']


class VideoViewPayload(SlotVideoPayload):
    """A watch-progress sample; several may arrive per slot visit."""

    event_type: Literal['video_view']
    played_seconds: float = Field(
        ge=0,
        le=MAX_WATCH_SECONDS,
        allow_inf_nan=False,
        validation_alias=AliasChoices('played_seconds', 'watch_seconds', 'playedSeconds')
    )


class VideoCompletedPayload(SlotVideoPayload):
    event_type: Literal['video_completed']


class SlotReachedPayload(SlotVideoPayload):
    event_type: Literal['slot_reached']


class ClickPayload(SlotVideoPayload):
    event_type: Literal['click']
    button_label: Optional[str] = None
    button_type: Optional[str] = None
    destination_url: Optional[str] = None


class ConversionPayload(EventPayload):
    event_type: Literal['conversion']
    rule_id: UUID = Field(validation_alias=AliasChoices('rule_id', 'ruleId'))
    slot_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices('slot_id', 'slotId'))
    video_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices('video_id', 'videoId'))


class SlotViewStartPayload(EventPayload):
    event_type: Literal['slot_view_start']
    slot_id: UUID = Field(validation_alias=AliasChoices('slot_id', 'slotId'))
    video_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices('video_id', 'videoId'))


class SlotViewEndPayload(EventPayload):
    event_type: Literal['slot_view_end']
    slot_id: UUID = Field(validation_alias=AliasChoices('slot_id', 'slotId'))
    watch_seconds: Optional[float] = Field(
        default=None,
        ge=0,
        le=MAX_WATCH_SECONDS,
        allow_inf_nan=False,
        validation_alias=AliasChoices('watch_seconds', 'watchDuration', 'watch_duration')
    )


class SessionEndPayload(EventPayload):
    event_type: Literal['session_end']


AnyEventPayload = Annotated[
    Union[
        WidgetOpenPayload,
        VideoStartPayload,
        VideoViewPayload,
        VideoCompletedPayload,
        SlotReachedPayload,
        ClickPayload,
        ConversionPayload,
        SlotViewStartPayload,
        SlotViewEndPayload,
        SessionEndPayload,
    ],
    Field(discriminator='event_type')
]

_payload_adapter = TypeAdapter(AnyEventPayload)

EVENT_TYPES = (
    'widget_open', 'video_start', 'video_view', 'video_completed', 'slot_reached',
    'click', 'conversion', 'slot_view_start', 'slot_view_end', 'session_end',
)


def parse_event(data: dict):
    """
    Parse a raw event into its payload model.

    Raises:
        ValidationError: Unknown event_type or missing/malformed fields
    """
    if not isinstance(data, dict):
        raise ValidationError('Request body is required')
    if not data.get('event_type'):
        raise ValidationError('Missing required fields: event_type')
    if data['event_type'] not in EVENT_TYPES:
        raise ValidationError('Invalid event_type')

    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        fields = sorted({
            str(err['loc'][-1]) for err in e.errors() if len(err['loc']) > 1
        })
        if fields:
            raise ValidationError(
                f"Missing or invalid fields for {data['event_type']} event: {', '.join(fields)}"
            )
        raise ValidationError(f"Invalid {data['event_type']} event")


def parse_timestamp(value: Optional[str]) -> datetime:
    """Client timestamp as naive UTC, or now when absent or unparseable."""
    if value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except (TypeError, ValueError):
            return utcnow()
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return utcnow()


@dataclass
class RecordResult:
    """What recording one event produced."""

    event_type: str
    row: Optional[object] = None
    conversions: List[ConversionEvent] = field(default_factory=list)
    closed: bool = False


def check_references(db: Session, access: WidgetAccess, payload) -> None:
    """
    Slots, videos and rules named by an event must belong to the event's project.

    Raises:
        NotFoundError: A referenced row is missing or belongs to another project
    """
    slot_id = getattr(payload, 'slot_id', None)
    if slot_id is not None:
        exists = db.query(Slot.id).filter(
            Slot.id == slot_id, Slot.project_id == access.project_id
        ).first()
        if exists is None:
            raise NotFoundError('Slot not found')

    video_id = getattr(payload, 'video_id', None)
    if video_id is not None:
        exists = db.query(Video.id).filter(
            Video.id == video_id, Video.project_id == access.project_id
        ).first()
        if exists is None:
            raise NotFoundError('Video not found')

    rule_id = getattr(payload, 'rule_id', None)
    if rule_id is not None:
        exists = db.query(ConversionRule.id).filter(
            ConversionRule.id == rule_id, ConversionRule.project_id == access.project_id
        ).first()
        if exists is None:
            raise NotFoundError('Conversion rule not found')


def _event_row(access: WidgetAccess, session: WidgetSession, payload, occurred_at: datetime) -> WidgetEvent:
    row = WidgetEvent(
        session_id=session.id,
        project_id=access.project_id,
        event_type=payload.event_type,
        slot_id=getattr(payload, 'slot_id', None),
        video_id=getattr(payload, 'video_id', None),
        occurred_at=occurred_at,
    )
    if isinstance(payload, WidgetOpenPayload):
        row.page_url = payload.page_url
        row.referrer = payload.referrer
        row.user_agent = payload.user_agent
    elif isinstance(payload, VideoViewPayload):
        row.played_ms = int(round(payload.played_seconds * 1000))
    elif isinstance(payload, ClickPayload):
        row.button_label = payload.button_label
        row.button_type = payload.button_type
        row.destination_url = payload.destination_url
    return row


def close_slot_view(db: Session, session_id, slot_id, watch_seconds: Optional[float] = None) -> bool:
    """
    Close the most recent open view of a slot in a session.

    No open view is not an error: end events may arrive twice or before
    their start from unreliable browser delivery. The caller commits.

    Returns:
        True if a view was closed
    """
    latest_open = db.query(SlotView.id).filter(
        SlotView.session_id == session_id,
        SlotView.slot_id == slot_id,
        SlotView.ended_at.is_(None)
    ).order_by(
        SlotView.started_at.desc(), SlotView.id.desc()
    ).limit(1).scalar_subquery()

    values = {'ended_at': utcnow()}
    if watch_seconds is not None:
        values['watch_duration_ms'] = int(round(watch_seconds * 1000))

    result = db.execute(
        update(SlotView)
        .where(SlotView.id == latest_open, SlotView.ended_at.is_(None))
        .values(**values),
        execution_options={'synchronize_session': False}
    )
    return result.rowcount > 0


def _evaluate_conversions(db: Session, access: WidgetAccess, session: WidgetSession, payload, row) -> List[ConversionEvent]:
    try:
        return conversions.evaluate(
            db,
            access,
            session.id,
            payload.event_type,
            conversions.EventFacts.from_payload(payload),
            source_event_id=row.id if row is not None else None,
        )
    except (SQLAlchemyError, StoreError):
        db.rollback()
        logger.exception(
            "Conversion evaluation failed for project %s session %s (%s)",
            access.project_id, session.id, payload.event_type
        )
        return []


def record_event(db: Session, access: WidgetAccess, session: WidgetSession, payload) -> RecordResult:
    """
    Record one parsed event against a session of the authorized project.

    Args:
        db: Database session
        access: Guard result for the project
        session: Session the event belongs to
        payload: Result of parse_event()

    Raises:
        AuthorizationError: Session of another project
        NotFoundError: Slot, video or rule outside the project
        StoreError: The event could not be written
    """
    sessions.ensure_session_access(session, access)

    if isinstance(payload, SessionEndPayload):
        closed = sessions.close(db, access, session.id)
        return RecordResult(event_type=payload.event_type, closed=closed)

    check_references(db, access, payload)
    occurred_at = parse_timestamp(payload.timestamp)
    result = RecordResult(event_type=payload.event_type)

    try:
        if isinstance(payload, ConversionPayload):
            result.row = conversions.record_explicit(
                db, access, session.id, payload.rule_id,
                conversions.EventFacts.from_payload(payload),
                converted_at=occurred_at,
            )
            result.conversions.append(result.row)
        elif isinstance(payload, SlotViewStartPayload):
            result.row = SlotView(
                session_id=session.id,
                slot_id=payload.slot_id,
                video_id=payload.video_id,
                started_at=occurred_at,
            )
            db.add(result.row)
        elif isinstance(payload, SlotViewEndPayload):
            result.closed = close_slot_view(db, session.id, payload.slot_id, payload.watch_seconds)
        else:
            result.row = _event_row(access, session, payload, occurred_at)
            db.add(result.row)

        session.last_active_at = utcnow()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to record %s for session %s: %s", payload.event_type, session.id, e)
        raise StoreError('Failed to record event')

    if payload.event_type in CONVERTING_KINDS:
        result.conversions.extend(_evaluate_conversions(db, access, session, payload, result.row))

    return result
