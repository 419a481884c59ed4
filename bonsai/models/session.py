"""
Runtime models written by embedded widgets: sessions and viewer events.

Events are append-only. The one exception is SlotView, whose open row is
closed in place when the matching slot_view_end arrives.
"""
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from bonsai.models.base import Base, GUID, utcnow
from bonsai.models.project import _iso, _str_or_none


class WidgetSession(Base):
    """
    One visitor's run through a project's slot graph.

    Open while ended_at is null. The converted flag only ever goes from
    false to true.
    """

    __tablename__ = "widget_sessions"

    id = Column(GUID, primary_key=True, default=uuid4)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(GUID, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    last_active_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    converted = Column(Boolean, nullable=False, default=False)

    device_type = Column(String(50), nullable=True)
    browser = Column(String(100), nullable=True)
    referrer = Column(Text, nullable=True)

    project = relationship("Project")
    events = relationship("WidgetEvent", back_populates="session", cascade="all, delete-orphan")
    slot_views = relationship("SlotView", back_populates="session", cascade="all, delete-orphan")
    conversions = relationship("ConversionEvent", back_populates="session", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<WidgetSession {self.id} project={self.project_id}>"

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "organization_id": str(self.organization_id),
            "visitor_id": self.visitor_id,
            "started_at": _iso(self.started_at),
            "last_active_at": _iso(self.last_active_at),
            "ended_at": _iso(self.ended_at),
            "converted": bool(self.converted),
            "device_type": self.device_type,
            "browser": self.browser,
            "referrer": self.referrer,
        }


class WidgetEvent(Base):
    """
    An immutable viewer event.

    Which columns are filled depends on event_type: widget_open carries page
    metadata, click carries the button, video_view carries played_ms.
    """

    __tablename__ = "widget_events"

    id = Column(GUID, primary_key=True, default=uuid4)
    session_id = Column(GUID, ForeignKey("widget_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False, index=True)

    slot_id = Column(GUID, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True)
    video_id = Column(GUID, ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)
    played_ms = Column(Integer, nullable=True)

    button_label = Column(Text, nullable=True)
    button_type = Column(String(30), nullable=True)
    destination_url = Column(Text, nullable=True)

    page_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)

    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("WidgetSession", back_populates="events")

    def __repr__(self) -> str:
        return f"<WidgetEvent {self.event_type} session={self.session_id}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "project_id": str(self.project_id),
            "event_type": self.event_type,
            "slot_id": _str_or_none(self.slot_id),
            "video_id": _str_or_none(self.video_id),
            "played_ms": self.played_ms,
            "button_label": self.button_label,
            "button_type": self.button_type,
            "destination_url": self.destination_url,
            "page_url": self.page_url,
            "referrer": self.referrer,
            "user_agent": self.user_agent,
            "occurred_at": _iso(self.occurred_at),
        }


class SlotView(Base):
    """A slot visit opened by slot_view_start and closed by slot_view_end."""

    __tablename__ = "event_slot_views"

    id = Column(GUID, primary_key=True, default=uuid4)
    session_id = Column(GUID, ForeignKey("widget_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_id = Column(GUID, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False)
    video_id = Column(GUID, ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    watch_duration_ms = Column(Integer, nullable=True)

    session = relationship("WidgetSession", back_populates="slot_views")

    def __repr__(self) -> str:
        return f"<SlotView slot={self.slot_id} open={self.ended_at is None}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "slot_id": str(self.slot_id),
            "video_id": _str_or_none(self.video_id),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "watch_duration_ms": self.watch_duration_ms,
        }


class ConversionEvent(Base):
    """One conversion: a rule matched (or was reported) within a session."""

    __tablename__ = "event_conversions"

    id = Column(GUID, primary_key=True, default=uuid4)
    session_id = Column(GUID, ForeignKey("widget_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(GUID, ForeignKey("conversion_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_id = Column(GUID, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True)
    video_id = Column(GUID, ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)
    source_event_id = Column(GUID, ForeignKey("widget_events.id", ondelete="SET NULL"), nullable=True)

    converted_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("WidgetSession", back_populates="conversions")
    rule = relationship("ConversionRule")

    def __repr__(self) -> str:
        return f"<ConversionEvent rule={self.rule_id} session={self.session_id}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "project_id": str(self.project_id),
            "rule_id": str(self.rule_id),
            "slot_id": _str_or_none(self.slot_id),
            "video_id": _str_or_none(self.video_id),
            "source_event_id": _str_or_none(self.source_event_id),
            "converted_at": _iso(self.converted_at),
        }
