"""
Tests for the slot graph service.

Covers trigger resolution over edges, entry slot lookup and the
single-entry-point update.
"""
import pytest

from bonsai.models import Slot
from bonsai.services import slot_graph
from bonsai.services.slot_graph import Trigger, TransitionEdge, resolve_next


def edge(id, trigger_type, priority=0, order=0, time_sec=None, to='next'):
    config = {'time_sec': time_sec} if time_sec is not None else {}
    return TransitionEdge(
        id=id, from_slot_id='s', to_slot_id=to, trigger_type=trigger_type,
        priority=priority, order=order, trigger_config=config,
    )


class TestTrigger:
    """Test Trigger values."""

    def test_constructors(self):
        assert Trigger.auto() == Trigger('auto', 0.0)
        assert Trigger.time(12) == Trigger('time', 12.0)
        assert Trigger.click().type == 'click'

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown trigger type"):
            Trigger('hover')


class TestResolveNext:
    """Test resolve_next() selection rules."""

    def test_lowest_priority_wins(self):
        """Priority 0 beats priority 1 regardless of list order."""
        edges = [edge('b', 'auto', priority=1), edge('a', 'auto', priority=0, order=1)]

        assert resolve_next(edges, Trigger.auto()).id == 'a'

    def test_equal_priority_falls_back_to_creation_order(self):
        edges = [edge('second', 'auto', order=1), edge('first', 'auto', order=0)]

        assert resolve_next(edges, Trigger.auto()).id == 'first'

    def test_only_matching_trigger_type_considered(self):
        edges = [edge('click', 'click', priority=0), edge('auto', 'auto', priority=5)]

        assert resolve_next(edges, Trigger.auto()).id == 'auto'
        assert resolve_next(edges, Trigger.click()).id == 'click'

    def test_no_match_returns_none(self):
        """A terminal slot for this trigger is not an error."""
        assert resolve_next([edge('click', 'click')], Trigger.auto()) is None
        assert resolve_next([], Trigger.click()) is None

    def test_time_edge_not_due_yet(self):
        assert resolve_next([edge('t', 'time', time_sec=10)], Trigger.time(9.5)) is None

    def test_time_edge_due_at_threshold(self):
        assert resolve_next([edge('t', 'time', time_sec=10)], Trigger.time(10)).id == 't'

    def test_latest_due_threshold_wins(self):
        """Among due time edges the largest threshold fires, even at worse priority."""
        edges = [
            edge('early', 'time', priority=0, time_sec=5),
            edge('late', 'time', priority=3, time_sec=8),
            edge('future', 'time', priority=0, time_sec=20),
        ]

        assert resolve_next(edges, Trigger.time(9)).id == 'late'

    def test_equal_thresholds_use_priority(self):
        edges = [
            edge('low', 'time', priority=2, time_sec=5),
            edge('high', 'time', priority=1, time_sec=5, order=1),
        ]

        assert resolve_next(edges, Trigger.time(6)).id == 'high'

    def test_time_edge_without_threshold_never_fires(self):
        assert resolve_next([edge('t', 'time')], Trigger.time(1000)) is None

    def test_time_thresholds_sorted_and_distinct(self):
        edges = [
            edge('a', 'time', time_sec=8), edge('b', 'time', time_sec=3),
            edge('c', 'time', time_sec=8), edge('d', 'auto'),
        ]

        assert slot_graph.time_thresholds(edges) == [3.0, 8.0]


class TestTransitionEdgePayload:
    """Test the widget payload shape of edges."""

    def test_payload_roundtrip_keeps_resolution_fields(self):
        original = edge('t1', 'time', priority=2, time_sec=4, to='slot-b')
        parsed = TransitionEdge.from_payload(original.to_payload(), from_slot_id='s')

        assert parsed.to_slot_id == 'slot-b'
        assert parsed.trigger_type == 'time'
        assert parsed.priority == 2
        assert parsed.time_sec == 4

    def test_from_model(self, graph):
        result = TransitionEdge.from_model(graph.transitions.intro_time)

        assert result.to_slot_id == str(graph.checkout.id)
        assert result.to_slot_name == 'Checkout'
        assert result.time_sec == 5.0


class TestEntrySlot:
    """Test entry slot lookup."""

    def test_flagged_slot_returned(self, db, graph):
        assert slot_graph.entry_slot(db, graph.project.id).id == graph.intro.id

    def test_falls_back_to_oldest_slot(self, db, graph):
        graph.intro.is_entry_point = False
        db.commit()

        assert slot_graph.entry_slot(db, graph.project.id).id == graph.intro.id

    def test_empty_project_has_no_entry(self, db, project):
        assert slot_graph.entry_slot(db, project.id) is None


class TestOutgoingTransitions:
    """Test outgoing transition queries."""

    def test_ordered_by_priority(self, db, graph):
        transitions = slot_graph.outgoing_transitions(db, graph.intro.id)

        assert [t.priority for t in transitions] == [0, 0, 1]
        assert transitions[-1].id == graph.transitions.intro_time.id

    def test_resolve_for_slot(self, db, graph):
        result = slot_graph.resolve_next_for_slot(db, graph.intro.id, Trigger.auto())

        assert result.to_slot_id == str(graph.products.id)

    def test_terminal_slot(self, db, graph):
        assert slot_graph.resolve_next_for_slot(db, graph.checkout.id, Trigger.auto()) is None


class TestSetEntryPoint:
    """Test the single-entry-point update."""

    def test_moves_flag(self, db, graph):
        slot_graph.set_entry_point(db, graph.checkout)
        db.commit()
        db.expire_all()

        flagged = db.query(Slot).filter(
            Slot.project_id == graph.project.id, Slot.is_entry_point.is_(True)
        ).all()
        assert [s.id for s in flagged] == [graph.checkout.id]

    def test_repeated_calls_leave_one_entry(self, db, graph):
        for slot in (graph.products, graph.checkout, graph.products):
            slot_graph.set_entry_point(db, slot)
            db.commit()

        db.expire_all()
        flagged = db.query(Slot).filter(
            Slot.project_id == graph.project.id, Slot.is_entry_point.is_(True)
        ).all()
        assert [s.id for s in flagged] == [graph.products.id]


class TestSlotPayload:
    """Test slot serialization for the widget."""

    def test_payload_with_signed_video(self, graph):
        payload = slot_graph.slot_payload(graph.checkout, lambda path: f'https://signed/{path}')

        assert payload['id'] == str(graph.checkout.id)
        assert payload['ctaButton'] == {'text': 'Buy now', 'url': 'https://shop.example.com/checkout'}
        assert payload['detailButton'] is None
        assert payload['video']['url'] == f'https://signed/{graph.videos.checkout.storage_path}'
        assert payload['video']['duration'] == 30000

    def test_payload_without_video(self, db, project):
        slot = Slot(project_id=project.id, name='Empty')
        db.add(slot)
        db.commit()

        assert slot_graph.slot_payload(slot, lambda path: path)['video'] is None
