"""
Operator-authored models: organizations, projects, videos, slots, transitions
and conversion rules.

All models use UUID primary keys and include timestamps. The organization's
widget key is encrypted at rest using Fernet.
"""
import secrets
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON,
    LargeBinary, String, Text
)
from sqlalchemy.orm import relationship

from bonsai.models.base import Base, GUID, utcnow
from bonsai.services.encryption import encryption_service

TRIGGER_TYPES = ('auto', 'time', 'click')
VIDEO_STATUSES = ('processing', 'ready', 'error')
RULE_EVENT_TYPES = ('slot_reached', 'video_completed', 'click', 'cta_clicked', 'video_view')

# Older rule conditions used target_* keys
CONDITION_ALIASES = {
    'target_slot_id': 'slot_id',
    'target_video_id': 'video_id',
    'target_url_pattern': 'url_pattern',
}
CONDITION_KEYS = ('slot_id', 'video_id', 'url_pattern')


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _str_or_none(value) -> Optional[str]:
    return str(value) if value else None


class Organization(Base):
    """
    Tenant owning projects.

    The widget key is the shared secret embedded widgets present; it is
    stored encrypted and compared in constant time.
    """

    __tablename__ = "organizations"

    id = Column(GUID, primary_key=True, default=uuid4)
    name = Column(Text, nullable=False)
    widget_key_encrypted = Column(LargeBinary, nullable=True)
    status = Column(String(20), nullable=False, default='active')

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    projects = relationship("Project", back_populates="organization", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Organization {self.name}>"

    @staticmethod
    def generate_widget_key() -> str:
        return secrets.token_urlsafe(24)

    @property
    def widget_key(self) -> Optional[str]:
        """Decrypt and return the widget key."""
        return encryption_service.decrypt_optional(self.widget_key_encrypted)

    @widget_key.setter
    def widget_key(self, value: Optional[str]) -> None:
        """Encrypt and store the widget key."""
        self.widget_key_encrypted = encryption_service.encrypt_optional(value)

    def check_widget_key(self, candidate: Optional[str]) -> bool:
        """Compare a presented widget key against the stored one."""
        return encryption_service.matches(self.widget_key_encrypted, candidate)

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    def to_dict(self, include_secrets: bool = False) -> dict:
        data = {
            "id": str(self.id),
            "name": self.name,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_secrets:
            data["widget_key"] = self.widget_key
        else:
            data["has_widget_key"] = self.widget_key_encrypted is not None
        return data


class Project(Base):
    """Tenant-scoped container for videos, slots and conversion rules."""

    __tablename__ = "projects"

    id = Column(GUID, primary_key=True, default=uuid4)
    organization_id = Column(GUID, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    allowed_origins = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="projects")
    videos = relationship("Video", back_populates="project", cascade="all, delete-orphan")
    slots = relationship("Slot", back_populates="project", cascade="all, delete-orphan")
    conversion_rules = relationship("ConversionRule", back_populates="project", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Project {self.name}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "name": self.name,
            "description": self.description,
            "allowed_origins": list(self.allowed_origins or []),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Video(Base):
    """A playable asset stored in the video bucket."""

    __tablename__ = "videos"

    id = Column(GUID, primary_key=True, default=uuid4)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    storage_path = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default='processing')

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="videos")

    def __repr__(self) -> str:
        return f"<Video {self.title} ({self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "title": self.title,
            "description": self.description,
            "storage_path": self.storage_path,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Slot(Base):
    """
    A node of the slot graph: one point in the experience where a video plays.

    At most one slot per project should be the entry point. That is kept by
    set_entry_point() in the slot graph service, not by a constraint.
    """

    __tablename__ = "slots"

    id = Column(GUID, primary_key=True, default=uuid4)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    video_id = Column(GUID, ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    is_entry_point = Column(Boolean, nullable=False, default=False)

    detail_button_text = Column(Text, nullable=True)
    detail_button_url = Column(Text, nullable=True)
    cta_button_text = Column(Text, nullable=True)
    cta_button_url = Column(Text, nullable=True)

    # Editor canvas only
    position_x = Column(Float, nullable=True)
    position_y = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="slots")
    video = relationship("Video")
    outgoing_transitions = relationship(
        "SlotTransition",
        foreign_keys="SlotTransition.from_slot_id",
        back_populates="from_slot",
        cascade="all, delete-orphan",
    )
    incoming_transitions = relationship(
        "SlotTransition",
        foreign_keys="SlotTransition.to_slot_id",
        back_populates="to_slot",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Slot {self.name}{' (entry)' if self.is_entry_point else ''}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "video_id": _str_or_none(self.video_id),
            "name": self.name,
            "description": self.description,
            "is_entry_point": bool(self.is_entry_point),
            "detail_button_text": self.detail_button_text,
            "detail_button_url": self.detail_button_url,
            "cta_button_text": self.cta_button_text,
            "cta_button_url": self.cta_button_url,
            "position": {"x": self.position_x, "y": self.position_y},
            "created_at": _iso(self.created_at),
        }


class SlotTransition(Base):
    """A directed, prioritized, trigger-typed edge between two slots."""

    __tablename__ = "slot_transitions"

    id = Column(GUID, primary_key=True, default=uuid4)
    from_slot_id = Column(GUID, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False, index=True)
    to_slot_id = Column(GUID, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False)
    trigger_type = Column(String(10), nullable=False, default='auto')
    trigger_config = Column(JSON, nullable=True)
    priority = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    from_slot = relationship("Slot", foreign_keys=[from_slot_id], back_populates="outgoing_transitions")
    to_slot = relationship("Slot", foreign_keys=[to_slot_id], back_populates="incoming_transitions")

    def __repr__(self) -> str:
        return f"<SlotTransition {self.from_slot_id} -> {self.to_slot_id} [{self.trigger_type}]>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "from_slot_id": str(self.from_slot_id),
            "to_slot_id": str(self.to_slot_id),
            "trigger_type": self.trigger_type,
            "trigger_config": dict(self.trigger_config or {}),
            "priority": self.priority,
            "created_at": _iso(self.created_at),
        }


class ConversionRule(Base):
    """
    A tenant-defined goal.

    The condition holds optional slot_id / video_id / url_pattern constraints;
    absent constraints are wildcards.
    """

    __tablename__ = "conversion_rules"

    id = Column(GUID, primary_key=True, default=uuid4)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    event_type = Column(String(30), nullable=False)
    condition = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="conversion_rules")

    def __repr__(self) -> str:
        return f"<ConversionRule {self.name} on {self.event_type}>"

    @staticmethod
    def normalize_condition(condition: Optional[dict]) -> dict:
        """
        Map legacy keys onto the canonical ones and drop empty constraints.

        Raises:
            ValueError: If the condition has an unknown key
        """
        normalized = {}
        for key, value in (condition or {}).items():
            key = CONDITION_ALIASES.get(key, key)
            if key not in CONDITION_KEYS:
                raise ValueError(f"Unknown condition key: {key}")
            if value not in (None, ''):
                normalized[key] = str(value)
        return normalized

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "name": self.name,
            "event_type": self.event_type,
            "condition": dict(self.condition or {}),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
