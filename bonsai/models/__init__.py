"""Database models package."""
from bonsai.models.base import Base
from bonsai.models.project import (
    Organization, Project, Video, Slot, SlotTransition, ConversionRule
)
from bonsai.models.session import WidgetSession, WidgetEvent, SlotView, ConversionEvent

__all__ = [
    "Base",
    "Organization",
    "Project",
    "Video",
    "Slot",
    "SlotTransition",
    "ConversionRule",
    "WidgetSession",
    "WidgetEvent",
    "SlotView",
    "ConversionEvent",
]
