"""
HTTP client for the widget API.

Used by the navigator to boot a session, load slots and report events.
Nothing here raises on network or server trouble: the caller keeps playing
whatever it has and the failure is logged. Events emitted during playback
are delivered in order by one background worker, so retries never hold up
navigation.
"""
import logging
import queue
import threading
import time
from typing import Dict, Optional

import requests

from bonsai.config import settings

logger = logging.getLogger(__name__)


class WidgetClient:
    """Client for one project's widget endpoints."""

    def __init__(
        self,
        api_url: str,
        project_id: str,
        widget_key: str,
        timeout: float = 10,
        max_attempts: Optional[int] = None,
        retry_delay: float = 0.5,
        http: Optional[requests.Session] = None
    ):
        """
        Args:
            api_url: Base URL of the widget API, e.g. "https://api.example.com"
            project_id: Project UUID
            widget_key: Organization widget key
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per event before it is dropped
                (defaults to settings.event_max_attempts)
            retry_delay: Seconds to wait before the second attempt, doubled after each failure
            http: requests session to use
        """
        self.api_url = api_url.rstrip('/')
        self.project_id = str(project_id)
        self.widget_key = widget_key
        self.timeout = timeout
        self.max_attempts = max_attempts or settings.event_max_attempts
        self.retry_delay = retry_delay
        self.http = http or requests.Session()
        self.session_id: Optional[str] = None
        self._events: queue.Queue = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    def _post(self, path: str, body: Dict) -> Optional[Dict]:
        try:
            response = self.http.post(
                f"{self.api_url}{path}", json=body, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning("Widget request %s failed: %s", path, e)
            return None

        if response.status_code != 200:
            logger.warning(
                "Widget request %s failed: HTTP %s %s", path, response.status_code, response.text
            )
            return None
        return response.json()

    def init(
        self,
        visitor_id: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        referrer: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Start a session on the entry slot.

        Returns:
            The init payload (sessionId, slot, transitions), or None on failure
        """
        body = {
            'projectId': self.project_id,
            'widgetKey': self.widget_key,
            'visitorId': visitor_id,
            'deviceType': device_type,
            'browser': browser,
            'referrer': referrer,
        }
        if self.session_id:
            body['sessionId'] = self.session_id

        payload = self._post('/widget/init', body)
        if payload is not None:
            self.session_id = payload.get('sessionId')
        return payload

    def navigate(self, slot_id: str) -> Optional[Dict]:
        """
        Load a slot and its outgoing transitions.

        Returns:
            {"slot": ..., "transitions": [...]}, or None on failure
        """
        if not self.session_id:
            logger.warning("navigate(%s) called before init", slot_id)
            return None

        return self._post('/widget/navigate', {
            'sessionId': self.session_id,
            'slotId': str(slot_id),
            'widgetKey': self.widget_key,
        })

    def config(self) -> Optional[Dict]:
        """Fetch the whole project graph, or None on failure."""
        try:
            response = self.http.get(
                f"{self.api_url}/widget/config/{self.project_id}", timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning("Widget config request failed: %s", e)
            return None

        if response.status_code != 200:
            logger.warning("Widget config request failed: HTTP %s", response.status_code)
            return None
        return response.json()

    def send_event(self, event_type: str, **fields) -> Optional[Dict]:
        """
        Report an event, retrying a few times before dropping it.

        Only failures where the server cannot have written the event are
        retried: connection errors and 5xx responses. A timeout may have
        been recorded already and a 4xx will not change, so neither is
        retried.

        Returns:
            The response body, or None if the event was dropped
        """
        body = {
            'project_id': self.project_id,
            'session_id': self.session_id,
            'widget_key': self.widget_key,
            'event_type': event_type,
        }
        body.update({k: v for k, v in fields.items() if v is not None})

        delay = self.retry_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.http.post(
                    f"{self.api_url}/widget/events", json=body, timeout=self.timeout
                )
            except requests.Timeout as e:
                logger.warning("Event %s timed out, not retrying: %s", event_type, e)
                return None
            except requests.RequestException as e:
                logger.warning(
                    "Event %s attempt %d/%d failed: %s", event_type, attempt, self.max_attempts, e
                )
            else:
                if response.status_code == 200:
                    result = response.json()
                    if result.get('session_id'):
                        self.session_id = result['session_id']
                    return result
                if response.status_code < 500:
                    logger.warning(
                        "Event %s rejected: HTTP %s %s",
                        event_type, response.status_code, response.text
                    )
                    return None
                logger.warning(
                    "Event %s attempt %d/%d failed: HTTP %s",
                    event_type, attempt, self.max_attempts, response.status_code
                )

            if attempt < self.max_attempts and delay:
                time.sleep(delay)
                delay *= 2

        logger.error("Dropping %s event after %d attempts", event_type, self.max_attempts)
        return None

    def emit(self, event_type: str, **fields) -> None:
        """
        Queue an event for background delivery and return immediately.

        Events go out in the order they were emitted, each through
        send_event() with its retry policy.
        """
        self._ensure_worker()
        self._events.put((event_type, fields))

    def flush(self) -> None:
        """Block until every queued event was delivered or dropped."""
        self._events.join()

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._deliver_events, name='widget-events', daemon=True
            )
            self._worker.start()

    def _deliver_events(self) -> None:
        while True:
            event_type, fields = self._events.get()
            try:
                self.send_event(event_type, **fields)
            except Exception:
                logger.exception("Delivering %s event failed", event_type)
            finally:
                self._events.task_done()
