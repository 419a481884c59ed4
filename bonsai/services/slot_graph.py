"""
Slot graph service.

Slots are the nodes of a project's experience and transitions the edges.
This module answers the questions the widget runtime asks of that graph:
which slot a visit starts on, which edges leave a slot, and which edge fires
for a given trigger.

resolve_next() is pure and works on TransitionEdge values, so the same rules
apply server-side (ORM rows) and in the widget (edges parsed from the
init/navigate payloads).
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, update
from sqlalchemy.orm import Session, joinedload

from bonsai.models.project import Slot, SlotTransition, TRIGGER_TYPES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    """
    Something that happened while a slot was playing.

    auto fires when the video ends, time when playback passes a threshold
    (elapsed is seconds of playback), click on an explicit viewer click.
    """

    type: str
    elapsed: float = 0.0

    def __post_init__(self):
        if self.type not in TRIGGER_TYPES:
            raise ValueError(f"Unknown trigger type: {self.type}")

    @classmethod
    def auto(cls) -> "Trigger":
        return cls('auto')

    @classmethod
    def time(cls, elapsed: float) -> "Trigger":
        return cls('time', float(elapsed))

    @classmethod
    def click(cls, elapsed: float = 0.0) -> "Trigger":
        return cls('click', float(elapsed))


@dataclass(frozen=True)
class TransitionEdge:
    """A transition reduced to what resolution needs."""

    id: str
    from_slot_id: str
    to_slot_id: str
    trigger_type: str
    priority: int = 0
    order: int = 0
    trigger_config: Dict = field(default_factory=dict, compare=False, hash=False)
    to_slot_name: Optional[str] = None

    @property
    def time_sec(self) -> Optional[float]:
        value = (self.trigger_config or {}).get('time_sec')
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_model(cls, transition: SlotTransition, order: int = 0) -> "TransitionEdge":
        to_slot = transition.to_slot
        return cls(
            id=str(transition.id),
            from_slot_id=str(transition.from_slot_id),
            to_slot_id=str(transition.to_slot_id),
            trigger_type=transition.trigger_type,
            priority=transition.priority or 0,
            order=order,
            trigger_config=dict(transition.trigger_config or {}),
            to_slot_name=to_slot.name if to_slot is not None else None,
        )

    @classmethod
    def from_payload(cls, data: Dict, from_slot_id: str, order: int = 0) -> "TransitionEdge":
        """Build an edge from the transitions list of an init/navigate response."""
        to_slot = data.get('toSlot') or {}
        return cls(
            id=str(data['id']),
            from_slot_id=str(from_slot_id),
            to_slot_id=str(to_slot.get('id') or data.get('toSlotId')),
            trigger_type=data.get('triggerType', 'auto'),
            priority=int(data.get('priority') or 0),
            order=order,
            trigger_config=dict(data.get('triggerConfig') or {}),
            to_slot_name=to_slot.get('name'),
        )

    def to_payload(self) -> Dict:
        return {
            'id': self.id,
            'triggerType': self.trigger_type,
            'triggerConfig': dict(self.trigger_config or {}),
            'priority': self.priority,
            'toSlot': {
                'id': self.to_slot_id,
                'name': self.to_slot_name,
            },
        }


def sort_edges(edges: Iterable[TransitionEdge]) -> List[TransitionEdge]:
    """Ascending priority, ties broken by creation order."""
    return sorted(edges, key=lambda e: (e.priority, e.order))


def resolve_next(edges: Iterable[TransitionEdge], trigger: Trigger) -> Optional[TransitionEdge]:
    """
    Pick the transition that fires for a trigger.

    Only edges whose trigger type matches are considered. For time triggers
    an edge is due once its time_sec threshold is <= the elapsed playback;
    among due edges the one with the largest threshold wins, then priority.
    Otherwise the lowest priority value wins.

    Returns:
        The winning edge, or None when nothing fires (a terminal slot for
        this trigger is not an error)
    """
    candidates = [e for e in sort_edges(edges) if e.trigger_type == trigger.type]

    if trigger.type == 'time':
        due = [e for e in candidates if e.time_sec is not None and e.time_sec <= trigger.elapsed]
        if not due:
            return None
        latest = max(e.time_sec for e in due)
        return next(e for e in due if e.time_sec == latest)

    return candidates[0] if candidates else None


def time_thresholds(edges: Iterable[TransitionEdge]) -> List[float]:
    """Distinct time_sec thresholds of the time-triggered edges, ascending."""
    return sorted({e.time_sec for e in edges if e.trigger_type == 'time' and e.time_sec is not None})


# Store-backed queries

def entry_slot(db: Session, project_id) -> Optional[Slot]:
    """
    Return the project's entry slot.

    If no slot is flagged, fall back to the oldest slot so the experience
    still starts somewhere deterministic.
    """
    ordering = (Slot.created_at.asc(), Slot.id.asc())

    slot = db.query(Slot).options(joinedload(Slot.video)).filter(
        Slot.project_id == project_id,
        Slot.is_entry_point.is_(True)
    ).order_by(*ordering).first()

    if slot is not None:
        return slot

    slot = db.query(Slot).options(joinedload(Slot.video)).filter(
        Slot.project_id == project_id
    ).order_by(*ordering).first()

    if slot is not None:
        logger.warning("Project %s has no entry slot, falling back to %s", project_id, slot.id)
    return slot


def outgoing_transitions(db: Session, slot_id) -> List[SlotTransition]:
    """All transitions leaving a slot, ascending priority then creation order."""
    return db.query(SlotTransition).options(
        joinedload(SlotTransition.to_slot)
    ).filter(
        SlotTransition.from_slot_id == slot_id
    ).order_by(
        SlotTransition.priority.asc(),
        SlotTransition.created_at.asc(),
        SlotTransition.id.asc()
    ).all()


def outgoing_edges(db: Session, slot_id) -> List[TransitionEdge]:
    return [
        TransitionEdge.from_model(t, order=i)
        for i, t in enumerate(outgoing_transitions(db, slot_id))
    ]


def resolve_next_for_slot(db: Session, slot_id, trigger: Trigger) -> Optional[TransitionEdge]:
    """resolve_next() over the slot's stored outgoing transitions."""
    return resolve_next(outgoing_edges(db, slot_id), trigger)


def set_entry_point(db: Session, slot: Slot) -> None:
    """
    Make this slot the project's only entry point.

    A single UPDATE flips every slot of the project, so concurrent callers
    end with exactly one entry point (the last writer's). The caller commits.
    """
    db.execute(
        update(Slot)
        .where(Slot.project_id == slot.project_id)
        .values(is_entry_point=case((Slot.id == slot.id, True), else_=False)),
        execution_options={'synchronize_session': False}
    )
    slot.is_entry_point = True


def project_graph(db: Session, project_id) -> Tuple[List[Slot], List[SlotTransition]]:
    """All slots of a project (with videos) and every transition between them."""
    slots = db.query(Slot).options(joinedload(Slot.video)).filter(
        Slot.project_id == project_id
    ).order_by(Slot.created_at.asc(), Slot.id.asc()).all()

    slot_ids = [s.id for s in slots]
    if not slot_ids:
        return slots, []

    transitions = db.query(SlotTransition).filter(
        SlotTransition.from_slot_id.in_(slot_ids)
    ).order_by(
        SlotTransition.priority.asc(),
        SlotTransition.created_at.asc(),
        SlotTransition.id.asc()
    ).all()

    return slots, transitions


def slot_payload(slot: Slot, sign_url: Callable[[Optional[str]], Optional[str]]) -> Dict:
    """
    Serialize a slot the way init/navigate return it.

    Args:
        slot: Slot with its video loaded
        sign_url: Turns a storage path into a playable URL
    """
    video = slot.video
    return {
        'id': str(slot.id),
        'name': slot.name,
        'detailButton': _button(slot.detail_button_text, slot.detail_button_url),
        'ctaButton': _button(slot.cta_button_text, slot.cta_button_url),
        'video': {
            'id': str(video.id),
            'title': video.title,
            'url': sign_url(video.storage_path),
            'duration': video.duration_ms,
        } if video is not None else None,
    }


def _button(text: Optional[str], url: Optional[str]) -> Optional[Dict]:
    if not text:
        return None
    return {'text': text, 'url': url}
