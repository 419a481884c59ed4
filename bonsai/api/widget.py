"""
Widget runtime API endpoints.

Called by the embedded widget on third-party pages: start a session on the
entry slot, move between slots, resolve a trigger server-side, record
events, and fetch the full project graph.

Every route authorizes the project with the widget guard before touching
anything else.
"""
from flask import Blueprint, current_app, jsonify, request

from bonsai.middleware.auth import get_request_origin, require_fields, widget_guard
from bonsai.errors import NotFoundError, ValidationError
from bonsai.models.base import SessionLocal, parse_uuid
from bonsai.models.project import Slot
from bonsai.services import events, sessions, slot_graph
from bonsai.services.storage import storage_service

widget_bp = Blueprint('widget', __name__, url_prefix='/widget')


def _sign(path):
    return storage_service.create_signed_url(path)


def _load_slot(db, project_id, slot_id) -> Slot:
    try:
        slot_uuid = parse_uuid(slot_id)
    except (TypeError, ValueError):
        raise NotFoundError('Slot not found')

    slot = db.query(Slot).filter(
        Slot.id == slot_uuid,
        Slot.project_id == project_id
    ).first()
    if slot is None:
        raise NotFoundError('Slot not found')
    return slot


def _slot_response(db, slot: Slot) -> dict:
    return {
        'slot': slot_graph.slot_payload(slot, _sign),
        'transitions': [e.to_payload() for e in slot_graph.outgoing_edges(db, slot.id)],
    }


@widget_bp.route('/init', methods=['POST'])
def init_widget():
    """
    Start (or resume) a widget session on the project's entry slot.

    Request body:
        {
            "projectId": "uuid",        // Required
            "widgetKey": "...",         // Required
            "sessionId": "uuid",        // Optional: resume an existing session
            "visitorId": "...",         // Optional
            "deviceType": "mobile",     // Optional
            "browser": "Firefox",       // Optional
            "referrer": "https://..."   // Optional
        }

    Returns:
        {
            "sessionId": "uuid",
            "created": true,
            "slot": {"id", "name", "detailButton", "ctaButton", "video"},
            "transitions": [{"id", "triggerType", "triggerConfig", "priority", "toSlot"}]
        }
    """
    data = require_fields(request.get_json(silent=True), 'projectId', 'widgetKey')

    db = SessionLocal()
    try:
        access = widget_guard.authorize(
            db, data['projectId'],
            widget_key=data['widgetKey'],
            origin=get_request_origin()
        )

        slot = slot_graph.entry_slot(db, access.project_id)
        if slot is None:
            raise NotFoundError('No entry point configured')

        session, created = sessions.open_or_validate(
            db, access,
            session_id=data.get('sessionId'),
            visitor_id=data.get('visitorId'),
            device_type=data.get('deviceType'),
            browser=data.get('browser'),
            referrer=data.get('referrer') or request.headers.get('Referer'),
        )
        if created:
            current_app.logger.info(
                "Widget session %s started for project %s", session.id, access.project_id
            )

        body = _slot_response(db, slot)
        body['sessionId'] = str(session.id)
        body['created'] = created
        return jsonify(body), 200

    finally:
        db.close()


@widget_bp.route('/navigate', methods=['POST'])
def navigate():
    """
    Load a slot of the session's project.

    Request body:
        {
            "sessionId": "uuid",   // Required
            "slotId": "uuid",      // Required
            "widgetKey": "..."     // Required
        }

    Returns:
        {"slot": {...}, "transitions": [...]}
    """
    data = require_fields(request.get_json(silent=True), 'sessionId', 'slotId', 'widgetKey')

    db = SessionLocal()
    try:
        session = sessions.find_session(db, data['sessionId'])
        access = widget_guard.authorize_project(
            session.project,
            widget_key=data['widgetKey'],
            origin=get_request_origin()
        )
        slot = _load_slot(db, access.project_id, data['slotId'])
        return jsonify(_slot_response(db, slot)), 200

    finally:
        db.close()


@widget_bp.route('/resolve', methods=['POST'])
def resolve():
    """
    Resolve which transition fires for a trigger on a slot.

    Request body:
        {
            "sessionId": "uuid",                        // Required
            "slotId": "uuid",                           // Required
            "widgetKey": "...",                         // Required
            "trigger": {"type": "time", "elapsed": 12}  // Required
        }

    Returns:
        {"transition": {...} | null, "slot": {...} | null, "transitions": [...]}

    A null transition means nothing fires for that trigger.
    """
    data = require_fields(
        request.get_json(silent=True), 'sessionId', 'slotId', 'widgetKey', 'trigger'
    )

    trigger_data = data['trigger']
    if not isinstance(trigger_data, dict):
        raise ValidationError('trigger must be an object')
    try:
        trigger = slot_graph.Trigger(
            trigger_data.get('type'), float(trigger_data.get('elapsed') or 0)
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e))

    db = SessionLocal()
    try:
        session = sessions.find_session(db, data['sessionId'])
        access = widget_guard.authorize_project(
            session.project,
            widget_key=data['widgetKey'],
            origin=get_request_origin()
        )
        slot = _load_slot(db, access.project_id, data['slotId'])

        edge = slot_graph.resolve_next_for_slot(db, slot.id, trigger)
        if edge is None:
            return jsonify({'transition': None, 'slot': None, 'transitions': []}), 200

        body = _slot_response(db, _load_slot(db, access.project_id, edge.to_slot_id))
        body['transition'] = edge.to_payload()
        return jsonify(body), 200

    finally:
        db.close()


@widget_bp.route('/events', methods=['POST', 'OPTIONS'])
def record_event():
    """
    Record a widget event.

    Request body:
        {
            "project_id": "uuid",        // Required
            "event_type": "video_view",  // Required
            "session_id": "uuid",        // Optional: a new session is started if absent or unknown
            "widget_key": "...",         // Optional
            ...                          // Per event type, e.g. slot_id, video_id, played_seconds
        }

    Returns:
        {"success": true, "session_id": "uuid"}   // session_id only when a session was started
    """
    if request.method == 'OPTIONS':
        return '', 204

    data = require_fields(request.get_json(silent=True), 'project_id', 'event_type')
    payload = events.parse_event(data)

    db = SessionLocal()
    try:
        access = widget_guard.authorize(
            db, data['project_id'],
            widget_key=data.get('widget_key'),
            origin=get_request_origin(),
            require_key=False
        )

        # A rejected event must not leave a freshly started session behind
        events.check_references(db, access, payload)

        session, created = sessions.open_or_validate(
            db, access,
            session_id=data.get('session_id'),
            visitor_id=data.get('visitor_id'),
            device_type=data.get('device_type'),
            browser=data.get('browser'),
            referrer=data.get('referrer'),
        )

        result = events.record_event(db, access, session, payload)

        body = {'success': True}
        if created:
            body['session_id'] = str(session.id)
        if result.conversions:
            body['conversions'] = len(result.conversions)
        return jsonify(body), 200

    finally:
        db.close()


@widget_bp.route('/event', methods=['POST'])
def record_legacy_event():
    """
    Record an event in the older session-bound format.

    Request body:
        {
            "sessionId": "uuid",       // Required
            "eventType": "click",      // Required
            "widgetKey": "...",        // Required
            "data": {...}              // Optional: event fields
        }
    """
    data = require_fields(request.get_json(silent=True), 'sessionId', 'eventType', 'widgetKey')

    event_data = dict(data.get('data') or {})
    event_data['event_type'] = data['eventType']
    payload = events.parse_event(event_data)

    db = SessionLocal()
    try:
        session = sessions.find_session(db, data['sessionId'])
        access = widget_guard.authorize_project(
            session.project,
            widget_key=data['widgetKey'],
            origin=get_request_origin()
        )
        events.record_event(db, access, session, payload)
        return jsonify({'success': True}), 200

    finally:
        db.close()


@widget_bp.route('/config/<project_id>', methods=['GET'])
def get_config(project_id):
    """
    Full project graph for widgets that resolve navigation locally.

    Returns:
        {
            "projectId": "uuid",
            "entrySlotId": "uuid" | null,
            "slots": [...],
            "transitions": [...]
        }
    """
    origin = request.headers.get('Origin')

    db = SessionLocal()
    try:
        access = widget_guard.authorize(
            db, project_id,
            origin=get_request_origin(),
            require_key=False
        )

        slots, transitions = slot_graph.project_graph(db, access.project_id)
        entry = next((s for s in slots if s.is_entry_point), slots[0] if slots else None)

        slot_list = []
        for slot in slots:
            item = slot_graph.slot_payload(slot, _sign)
            item['isEntryPoint'] = bool(slot.is_entry_point)
            slot_list.append(item)

        body = {
            'projectId': str(access.project_id),
            'entrySlotId': str(entry.id) if entry is not None else None,
            'slots': slot_list,
            'transitions': [
                {
                    'id': str(t.id),
                    'fromSlotId': str(t.from_slot_id),
                    'toSlotId': str(t.to_slot_id),
                    'triggerType': t.trigger_type,
                    'triggerConfig': dict(t.trigger_config or {}),
                    'priority': t.priority,
                }
                for t in transitions
            ],
        }

    finally:
        db.close()

    response = jsonify(body)
    response.headers['Cache-Control'] = 'public, max-age=60'
    response.headers['Access-Control-Allow-Origin'] = origin or '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, OPTIONS'
    if origin:
        response.headers['Vary'] = 'Origin'
    return response, 200
