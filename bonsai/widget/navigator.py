"""
Widget navigation state machine.

Drives a viewer through a project's slot graph:

    IDLE -> LOADING -> PLAYING(slot) -> TRANSITIONING -> PLAYING(next) ... -> ENDED

The host player reports what happens (pause, resume, video ended, clicks)
and the navigator decides which slot plays next, using the same
resolve_next() rules the server applies. Time-triggered transitions run on
timers that belong to one slot visit; switching slots cancels them, and a
timer that still fires late is ignored because its visit is over.
"""
import enum
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from bonsai.services.slot_graph import Trigger, TransitionEdge, resolve_next, time_thresholds
from bonsai.widget.client import WidgetClient

logger = logging.getLogger(__name__)


class NavigatorState(str, enum.Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    PLAYING = 'playing'
    TRANSITIONING = 'transitioning'
    ENDED = 'ended'


class ThreadingScheduler:
    """Runs callbacks on threading.Timer threads."""

    def call_later(self, delay: float, callback: Callable[[], None]):
        timer = threading.Timer(max(delay, 0), callback)
        timer.daemon = True
        timer.start()
        return timer


class SlotVisit:
    """One stay on a slot: its edges, timers and played time."""

    def __init__(self, generation: int, slot: Dict, transitions: List[Dict]):
        self.generation = generation
        self.slot = slot
        self.edges = [
            TransitionEdge.from_payload(t, slot['id'], order=i)
            for i, t in enumerate(transitions or [])
        ]
        self.timers = []
        self.fired_thresholds = set()
        self.accumulated = 0.0
        self.play_started: Optional[float] = None
        self.video_ended = False

    @property
    def slot_id(self) -> str:
        return self.slot['id']

    @property
    def video(self) -> Optional[Dict]:
        return self.slot.get('video')

    @property
    def video_id(self) -> Optional[str]:
        return self.video['id'] if self.video else None


class Navigator:
    """
    Client-side navigation resolver for one widget instance.

    Usage:
        navigator = Navigator(WidgetClient(api_url, project_id, widget_key))
        navigator.start(visitor_id='v-123')
        ...
        navigator.on_video_ended()
    """

    def __init__(
        self,
        client: WidgetClient,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            client: Widget API client
            scheduler: Object with call_later(delay, callback) returning a
                handle with cancel(). Defaults to ThreadingScheduler.
            clock: Monotonic clock in seconds
        """
        self.client = client
        self.scheduler = scheduler or ThreadingScheduler()
        self.clock = clock
        self.state = NavigatorState.IDLE
        self.history: List[str] = []
        self._visit: Optional[SlotVisit] = None
        self._generation = 0
        self._lock = threading.RLock()

    # Introspection

    @property
    def current_slot(self) -> Optional[Dict]:
        return self._visit.slot if self._visit else None

    @property
    def transitions(self) -> List[TransitionEdge]:
        return list(self._visit.edges) if self._visit else []

    @property
    def can_go_back(self) -> bool:
        return self.state == NavigatorState.PLAYING and bool(self.history)

    def played_seconds(self) -> float:
        """Playback time of the current visit, including the running stretch."""
        visit = self._visit
        if visit is None:
            return 0.0
        if visit.play_started is None:
            return visit.accumulated
        return visit.accumulated + (self.clock() - visit.play_started)

    # Lifecycle

    def start(self, visitor_id: Optional[str] = None, **metadata) -> bool:
        """
        Boot the widget on the project's entry slot.

        Args:
            visitor_id: Stable visitor identifier
            metadata: device_type, browser, referrer, page_url, user_agent

        Returns:
            False if the session could not be started; the widget then stays idle
        """
        with self._lock:
            if self.state != NavigatorState.IDLE:
                return False

            self.state = NavigatorState.LOADING
            payload = self.client.init(
                visitor_id=visitor_id,
                device_type=metadata.get('device_type'),
                browser=metadata.get('browser'),
                referrer=metadata.get('referrer'),
            )
            if payload is None or not payload.get('slot'):
                logger.warning("Widget init failed, staying idle")
                self.state = NavigatorState.IDLE
                return False

            self.client.emit(
                'widget_open',
                page_url=metadata.get('page_url'),
                referrer=metadata.get('referrer'),
                user_agent=metadata.get('user_agent'),
            )
            self._enter(payload['slot'], payload.get('transitions'))
            return True

    def close(self) -> None:
        """Viewer closed the widget: report watch time and end the session."""
        with self._lock:
            if self.state == NavigatorState.IDLE:
                return
            if self._visit is not None:
                self._pause_clock(self._visit)
                self._cancel_timers(self._visit)
                self._flush_view(self._visit)
            self._generation += 1
            self.state = NavigatorState.ENDED
            self.client.emit('session_end')

    # Player callbacks

    def pause(self) -> None:
        with self._lock:
            visit = self._visit
            if self.state != NavigatorState.PLAYING or visit.play_started is None:
                return
            self._pause_clock(visit)
            self._cancel_timers(visit)

    def resume(self) -> None:
        with self._lock:
            visit = self._visit
            if self.state != NavigatorState.PLAYING or visit.play_started is not None or visit.video_ended:
                return
            visit.play_started = self.clock()
            self._schedule_time_triggers(visit)

    def on_video_ended(self) -> None:
        """The slot's video played to the end: report it and follow an auto transition."""
        with self._lock:
            visit = self._visit
            if self.state != NavigatorState.PLAYING or visit.video_ended:
                return

            self._pause_clock(visit)
            self._cancel_timers(visit)
            visit.video_ended = True
            self._flush_view(visit)
            if visit.video_id:
                self.client.emit(
                    'video_completed', slot_id=visit.slot_id, video_id=visit.video_id
                )
            self.trigger(Trigger.auto())

    def click_transition(self, transition_id: Optional[str] = None) -> bool:
        """
        Viewer chose to move on.

        Args:
            transition_id: A specific click transition; otherwise the
                highest-priority one

        Returns:
            True if a transition fired
        """
        with self._lock:
            if self.state != NavigatorState.PLAYING:
                return False

            if transition_id is None:
                return self.trigger(Trigger.click(self.played_seconds()))

            edge = next(
                (e for e in self._visit.edges
                 if e.id == str(transition_id) and e.trigger_type == 'click'),
                None
            )
            if edge is None:
                return False
            return self._follow(edge)

    def click_button(self, kind: str) -> Optional[str]:
        """
        Viewer clicked the slot's CTA or detail button.

        Still reported after the experience has ended.

        Args:
            kind: "cta" or "detail"

        Returns:
            The button's destination URL to open, or None if the slot has no such button
        """
        with self._lock:
            visit = self._visit
            if visit is None:
                return None

            button = visit.slot.get('ctaButton' if kind == 'cta' else 'detailButton')
            if not button:
                return None

            if visit.video_id:
                self.client.emit(
                    'click',
                    slot_id=visit.slot_id,
                    video_id=visit.video_id,
                    button_label=button.get('text'),
                    button_type=kind,
                    destination_url=button.get('url'),
                )
            return button.get('url')

    def go_back(self) -> bool:
        """Return to the previous slot. Returns False when there is none."""
        with self._lock:
            if not self.can_go_back:
                return False
            previous = self.history.pop()
            if not self._switch_to(previous):
                self.history.append(previous)
                return False
            return True

    # Resolution

    def trigger(self, trigger: Trigger) -> bool:
        """
        Apply a trigger to the current slot.

        An auto trigger with nothing to follow ends the experience; time
        and click triggers with nothing to follow leave playback alone.

        Returns:
            True if a transition fired
        """
        with self._lock:
            if self.state != NavigatorState.PLAYING:
                return False

            edge = resolve_next(self._visit.edges, trigger)
            if edge is None:
                if trigger.type == 'auto':
                    self._end()
                return False

            return self._follow(edge)

    def _follow(self, edge: TransitionEdge) -> bool:
        from_slot = self._visit.slot_id
        if not self._switch_to(edge.to_slot_id):
            return False
        self.history.append(from_slot)
        return True

    def _switch_to(self, slot_id: str) -> bool:
        old = self._visit
        was_running = old.play_started is not None
        self.state = NavigatorState.TRANSITIONING
        self._pause_clock(old)
        self._cancel_timers(old)
        self._generation += 1

        payload = self.client.navigate(slot_id)
        if payload is None or not payload.get('slot'):
            logger.warning("Could not load slot %s, staying on %s", slot_id, old.slot_id)
            if old.video_ended:
                self.state = NavigatorState.ENDED
            else:
                self.state = NavigatorState.PLAYING
                old.generation = self._generation
                if was_running:
                    old.play_started = self.clock()
                    self._schedule_time_triggers(old)
            return False

        self._flush_view(old)
        self._enter(payload['slot'], payload.get('transitions'))
        return True

    def _enter(self, slot: Dict, transitions: List[Dict]) -> None:
        visit = SlotVisit(self._generation, slot, transitions)
        self._visit = visit
        self.state = NavigatorState.PLAYING
        visit.play_started = self.clock()
        self._schedule_time_triggers(visit)

        if visit.video_id:
            self.client.emit('slot_reached', slot_id=visit.slot_id, video_id=visit.video_id)
            self.client.emit('video_start', slot_id=visit.slot_id, video_id=visit.video_id)

    def _end(self) -> None:
        visit = self._visit
        self._pause_clock(visit)
        self._cancel_timers(visit)
        self._flush_view(visit)
        self._generation += 1
        self.state = NavigatorState.ENDED

    # Timers and played time

    def _schedule_time_triggers(self, visit: SlotVisit) -> None:
        played = self.played_seconds()
        for threshold in time_thresholds(visit.edges):
            if threshold in visit.fired_thresholds:
                continue
            visit.timers.append(self.scheduler.call_later(
                threshold - played,
                self._time_callback(visit.generation, threshold)
            ))

    def _time_callback(self, generation: int, threshold: float) -> Callable[[], None]:
        def fire():
            with self._lock:
                visit = self._visit
                if (visit is None or visit.generation != generation
                        or self.state != NavigatorState.PLAYING
                        or visit.play_started is None):
                    return
                visit.fired_thresholds.add(threshold)
                self.trigger(Trigger.time(max(self.played_seconds(), threshold)))
        return fire

    def _cancel_timers(self, visit: Optional[SlotVisit]) -> None:
        if visit is None:
            return
        for timer in visit.timers:
            timer.cancel()
        visit.timers = []

    def _pause_clock(self, visit: Optional[SlotVisit]) -> None:
        if visit is None or visit.play_started is None:
            return
        visit.accumulated += self.clock() - visit.play_started
        visit.play_started = None

    def _flush_view(self, visit: Optional[SlotVisit]) -> None:
        """Send the visit's accumulated watch time as one video_view."""
        if visit is None or not visit.video_id:
            return
        played = round(visit.accumulated, 3)
        visit.accumulated = 0.0
        if played <= 0:
            return
        self.client.emit(
            'video_view', slot_id=visit.slot_id, video_id=visit.video_id, played_seconds=played
        )
