"""Widget runtime: API client and navigation state machine."""
from bonsai.widget.client import WidgetClient
from bonsai.widget.navigator import Navigator, NavigatorState, ThreadingScheduler

__all__ = [
    "WidgetClient",
    "Navigator",
    "NavigatorState",
    "ThreadingScheduler",
]
