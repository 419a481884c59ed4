"""
Operator API endpoints.

CRUD for organizations, projects, videos, slots, transitions and conversion
rules, plus project analytics. Every route requires the master X-API-Key.
"""
import os
from uuid import UUID, uuid4

from flask import Blueprint, current_app, jsonify, request
from werkzeug.utils import secure_filename

from bonsai.errors import NotFoundError, ValidationError, WidgetError
from bonsai.middleware.auth import require_api_key, require_fields
from bonsai.models.base import SessionLocal, parse_uuid
from bonsai.models.project import (
    ConversionRule, Organization, Project, Slot, SlotTransition, Video,
    RULE_EVENT_TYPES, TRIGGER_TYPES, VIDEO_STATUSES
)
from bonsai.services import slot_graph
from bonsai.services.analytics import get_project_analytics
from bonsai.services.storage import storage_service

admin_bp = Blueprint('admin', __name__, url_prefix='/api/v1/admin')

SLOT_FIELDS = (
    'name', 'description', 'detail_button_text', 'detail_button_url',
    'cta_button_text', 'cta_button_url', 'position_x', 'position_y'
)


def _get_or_404(db, model, object_id, label: str):
    obj = db.query(model).filter(model.id == object_id).first()
    if obj is None:
        raise NotFoundError(f'{label} not found')
    return obj


def _project_uuid_field(db, project_id, value, model, label: str):
    """Resolve an id from a request body to a row of the same project."""
    if value in (None, ''):
        return None
    try:
        object_id = parse_uuid(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {label.lower()} id')

    obj = db.query(model).filter(model.id == object_id, model.project_id == project_id).first()
    if obj is None:
        raise NotFoundError(f'{label} not found in this project')
    return obj


def _validate_trigger(trigger_type: str, trigger_config) -> dict:
    if trigger_type not in TRIGGER_TYPES:
        raise ValidationError(f"trigger_type must be one of: {', '.join(TRIGGER_TYPES)}")
    if trigger_config is not None and not isinstance(trigger_config, dict):
        raise ValidationError('trigger_config must be an object')

    config = dict(trigger_config or {})
    if trigger_type == 'time':
        try:
            config['time_sec'] = float(config['time_sec'])
        except (KeyError, TypeError, ValueError):
            raise ValidationError('time transitions require a numeric trigger_config.time_sec')
        if config['time_sec'] < 0:
            raise ValidationError('trigger_config.time_sec must be >= 0')
    return config


def _validate_rule(db, project_id, event_type, condition) -> dict:
    if event_type not in RULE_EVENT_TYPES:
        raise ValidationError(f"event_type must be one of: {', '.join(RULE_EVENT_TYPES)}")
    if condition is not None and not isinstance(condition, dict):
        raise ValidationError('condition must be an object')
    try:
        normalized = ConversionRule.normalize_condition(condition)
    except ValueError as e:
        raise ValidationError(str(e))

    # Ids are stored canonical and must point into the rule's own project
    if 'slot_id' in normalized:
        slot = _project_uuid_field(db, project_id, normalized['slot_id'], Slot, 'Slot')
        normalized['slot_id'] = str(slot.id)
    if 'video_id' in normalized:
        video = _project_uuid_field(db, project_id, normalized['video_id'], Video, 'Video')
        normalized['video_id'] = str(video.id)
    return normalized


# Organizations

@admin_bp.route('/organizations', methods=['POST'])
@require_api_key
def create_organization():
    """
    Create an organization and issue its widget key.

    Request body:
        {"name": "Acme"}

    Returns:
        The organization including its widget_key (only returned here and on regeneration)
    """
    data = require_fields(request.get_json(silent=True), 'name')

    db = SessionLocal()
    try:
        organization = Organization(name=data['name'], status=data.get('status', 'active'))
        organization.widget_key = Organization.generate_widget_key()
        db.add(organization)
        db.commit()
        db.refresh(organization)

        current_app.logger.info("Created organization %s", organization.id)
        return jsonify(organization.to_dict(include_secrets=True)), 201

    finally:
        db.close()


@admin_bp.route('/organizations/<uuid:organization_id>', methods=['GET'])
@require_api_key
def get_organization(organization_id: UUID):
    db = SessionLocal()
    try:
        organization = _get_or_404(db, Organization, organization_id, 'Organization')
        return jsonify(organization.to_dict()), 200
    finally:
        db.close()


@admin_bp.route('/organizations/<uuid:organization_id>', methods=['PATCH'])
@require_api_key
def update_organization(organization_id: UUID):
    """Rename an organization or change its status (active / suspended)."""
    data = request.get_json(silent=True) or {}

    db = SessionLocal()
    try:
        organization = _get_or_404(db, Organization, organization_id, 'Organization')
        if 'name' in data:
            organization.name = data['name']
        if 'status' in data:
            if data['status'] not in ('active', 'suspended'):
                raise ValidationError('status must be active or suspended')
            organization.status = data['status']
        db.commit()
        db.refresh(organization)
        return jsonify(organization.to_dict()), 200
    finally:
        db.close()


@admin_bp.route('/organizations/<uuid:organization_id>/widget-key', methods=['POST'])
@require_api_key
def regenerate_widget_key(organization_id: UUID):
    """Replace the organization's widget key. Widgets using the old key stop working."""
    db = SessionLocal()
    try:
        organization = _get_or_404(db, Organization, organization_id, 'Organization')
        organization.widget_key = Organization.generate_widget_key()
        db.commit()

        current_app.logger.info("Regenerated widget key for organization %s", organization.id)
        return jsonify({
            'organization_id': str(organization.id),
            'widget_key': organization.widget_key,
        }), 200
    finally:
        db.close()


# Projects

@admin_bp.route('/projects', methods=['POST'])
@require_api_key
def create_project():
    """
    Create a project.

    Request body:
        {
            "organization_id": "uuid",                       // Required
            "name": "Spring launch",                         // Required
            "description": "...",                            // Optional
            "allowed_origins": ["https://shop.example.com"]  // Optional
        }
    """
    data = require_fields(request.get_json(silent=True), 'organization_id', 'name')

    allowed_origins = data.get('allowed_origins') or []
    if not isinstance(allowed_origins, list):
        raise ValidationError('allowed_origins must be a list')

    db = SessionLocal()
    try:
        try:
            organization_id = parse_uuid(data['organization_id'])
        except (TypeError, ValueError):
            raise ValidationError('Invalid organization_id')
        _get_or_404(db, Organization, organization_id, 'Organization')

        project = Project(
            organization_id=organization_id,
            name=data['name'],
            description=data.get('description'),
            allowed_origins=allowed_origins,
        )
        db.add(project)
        db.commit()
        db.refresh(project)
        return jsonify(project.to_dict()), 201
    finally:
        db.close()


@admin_bp.route('/projects', methods=['GET'])
@require_api_key
def list_projects():
    """List projects, optionally filtered by ?organization_id=."""
    organization_id = request.args.get('organization_id')

    db = SessionLocal()
    try:
        query = db.query(Project)
        if organization_id:
            try:
                query = query.filter(Project.organization_id == parse_uuid(organization_id))
            except (TypeError, ValueError):
                raise ValidationError('Invalid organization_id')

        projects = query.order_by(Project.created_at.desc()).all()
        return jsonify({
            'projects': [p.to_dict() for p in projects],
            'count': len(projects),
        }), 200
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>', methods=['GET'])
@require_api_key
def get_project(project_id: UUID):
    """Project with its full graph and rules."""
    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')
        slots, transitions = slot_graph.project_graph(db, project.id)
        videos = db.query(Video).filter(Video.project_id == project.id).order_by(Video.created_at.asc()).all()
        rules = db.query(ConversionRule).filter(
            ConversionRule.project_id == project.id
        ).order_by(ConversionRule.created_at.asc()).all()

        data = project.to_dict()
        data['videos'] = [v.to_dict() for v in videos]
        data['slots'] = [s.to_dict() for s in slots]
        data['transitions'] = [t.to_dict() for t in transitions]
        data['conversion_rules'] = [r.to_dict() for r in rules]
        return jsonify(data), 200
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>', methods=['PUT'])
@require_api_key
def update_project(project_id: UUID):
    data = request.get_json(silent=True)
    if not data:
        raise ValidationError('Request body is required')

    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')
        for field in ('name', 'description'):
            if field in data:
                setattr(project, field, data[field])
        if 'allowed_origins' in data:
            if not isinstance(data['allowed_origins'], list):
                raise ValidationError('allowed_origins must be a list')
            project.allowed_origins = data['allowed_origins']

        db.commit()
        db.refresh(project)
        return jsonify(project.to_dict()), 200
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>', methods=['DELETE'])
@require_api_key
def delete_project(project_id: UUID):
    """Delete a project, its graph, rules and stored videos."""
    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')

        paths = [v.storage_path for v in project.videos if v.storage_path]
        if paths:
            result = storage_service.remove(paths)
            if not result['success']:
                raise WidgetError(f"Failed to remove videos: {result['error']}", 502)

        db.delete(project)
        db.commit()
        current_app.logger.info("Deleted project %s", project_id)
        return jsonify({'success': True, 'deleted_id': str(project_id)}), 200
    finally:
        db.close()


# Videos

@admin_bp.route('/projects/<uuid:project_id>/videos', methods=['POST'])
@require_api_key
def create_video(project_id: UUID):
    """
    Register a video, optionally uploading its file.

    Either multipart/form-data with a "file" part (and title, duration_ms
    form fields), or JSON:
        {
            "title": "Intro",            // Required
            "storage_path": "...",       // Optional: object already in the bucket
            "duration_ms": 30000,        // Optional
            "status": "ready"            // Optional
        }
    """
    upload = request.files.get('file')
    data = request.form.to_dict() if upload is not None else request.get_json(silent=True)
    data = require_fields(data, 'title')

    duration_ms = data.get('duration_ms')
    if duration_ms not in (None, ''):
        try:
            duration_ms = int(duration_ms)
        except (TypeError, ValueError):
            raise ValidationError('duration_ms must be an integer')
        if duration_ms < 0:
            raise ValidationError('duration_ms must be >= 0')
    else:
        duration_ms = None

    status = data.get('status', 'ready' if data.get('storage_path') else 'processing')
    if status not in VIDEO_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(VIDEO_STATUSES)}")

    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')

        video = Video(
            id=uuid4(),
            project_id=project.id,
            title=data['title'],
            description=data.get('description'),
            storage_path=data.get('storage_path'),
            duration_ms=duration_ms,
            status=status,
        )

        if upload is not None:
            filename = secure_filename(upload.filename or '') or 'video.mp4'
            extension = os.path.splitext(filename)[1] or '.mp4'
            path = f"{project.organization_id}/{project.id}/{video.id}{extension}"

            result = storage_service.upload(
                path, upload.read(), upload.mimetype or 'video/mp4'
            )
            if not result['success']:
                raise WidgetError(f"Upload failed: {result['error']}", 502)

            video.storage_path = path
            video.status = 'ready'

        db.add(video)
        db.commit()
        db.refresh(video)
        return jsonify(video.to_dict()), 201
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>/videos', methods=['GET'])
@require_api_key
def list_videos(project_id: UUID):
    db = SessionLocal()
    try:
        _get_or_404(db, Project, project_id, 'Project')
        videos = db.query(Video).filter(
            Video.project_id == project_id
        ).order_by(Video.created_at.asc()).all()
        return jsonify({'videos': [v.to_dict() for v in videos], 'count': len(videos)}), 200
    finally:
        db.close()


@admin_bp.route('/videos/<uuid:video_id>', methods=['DELETE'])
@require_api_key
def delete_video(video_id: UUID):
    """
    Delete a video.

    The stored object goes first; if that fails the row stays so the blob is
    never orphaned. Slots that played the video are left without one.
    """
    db = SessionLocal()
    try:
        video = _get_or_404(db, Video, video_id, 'Video')

        if video.storage_path:
            result = storage_service.remove([video.storage_path])
            if not result['success']:
                raise WidgetError(f"Failed to remove video file: {result['error']}", 502)

        db.query(Slot).filter(Slot.video_id == video.id).update(
            {Slot.video_id: None}, synchronize_session=False
        )
        db.delete(video)
        db.commit()
        current_app.logger.info("Deleted video %s", video_id)
        return jsonify({'success': True, 'deleted_id': str(video_id)}), 200
    finally:
        db.close()


# Slots

def _apply_slot_fields(db, slot: Slot, data: dict) -> None:
    for field in SLOT_FIELDS:
        if field in data:
            setattr(slot, field, data[field])
    if 'video_id' in data:
        video = _project_uuid_field(db, slot.project_id, data['video_id'], Video, 'Video')
        slot.video_id = video.id if video is not None else None


@admin_bp.route('/projects/<uuid:project_id>/slots', methods=['POST'])
@require_api_key
def create_slot(project_id: UUID):
    """
    Create a slot.

    Request body:
        {
            "name": "Intro",             // Required
            "video_id": "uuid",          // Optional: video of the same project
            "is_entry_point": true,      // Optional: unflags every other slot
            "cta_button_text": "Buy",    // Optional
            "cta_button_url": "https://..."
        }
    """
    data = require_fields(request.get_json(silent=True), 'name')

    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')

        slot = Slot(project_id=project.id, is_entry_point=False)
        _apply_slot_fields(db, slot, data)
        db.add(slot)
        db.flush()

        # The first slot of a project becomes its entry point
        first = db.query(Slot.id).filter(Slot.project_id == project.id).count() == 1
        if data.get('is_entry_point') or first:
            slot_graph.set_entry_point(db, slot)

        db.commit()
        db.refresh(slot)
        return jsonify(slot.to_dict()), 201
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>/slots', methods=['GET'])
@require_api_key
def list_slots(project_id: UUID):
    db = SessionLocal()
    try:
        _get_or_404(db, Project, project_id, 'Project')
        slots, transitions = slot_graph.project_graph(db, project_id)
        return jsonify({
            'slots': [s.to_dict() for s in slots],
            'transitions': [t.to_dict() for t in transitions],
        }), 200
    finally:
        db.close()


@admin_bp.route('/slots/<uuid:slot_id>', methods=['PUT'])
@require_api_key
def update_slot(slot_id: UUID):
    data = request.get_json(silent=True)
    if not data:
        raise ValidationError('Request body is required')

    db = SessionLocal()
    try:
        slot = _get_or_404(db, Slot, slot_id, 'Slot')
        _apply_slot_fields(db, slot, data)

        if data.get('is_entry_point'):
            slot_graph.set_entry_point(db, slot)
        elif data.get('is_entry_point') is False:
            slot.is_entry_point = False

        db.commit()
        db.refresh(slot)
        return jsonify(slot.to_dict()), 200
    finally:
        db.close()


@admin_bp.route('/slots/<uuid:slot_id>', methods=['DELETE'])
@require_api_key
def delete_slot(slot_id: UUID):
    """Delete a slot together with every transition into or out of it."""
    db = SessionLocal()
    try:
        slot = _get_or_404(db, Slot, slot_id, 'Slot')

        db.query(SlotTransition).filter(
            (SlotTransition.from_slot_id == slot.id) | (SlotTransition.to_slot_id == slot.id)
        ).delete(synchronize_session=False)
        db.expire(slot)
        db.delete(slot)
        db.commit()
        return jsonify({'success': True, 'deleted_id': str(slot_id)}), 200
    finally:
        db.close()


# Transitions

@admin_bp.route('/projects/<uuid:project_id>/transitions', methods=['POST'])
@require_api_key
def create_transition(project_id: UUID):
    """
    Create a transition between two slots of the project.

    Request body:
        {
            "from_slot_id": "uuid",               // Required
            "to_slot_id": "uuid",                 // Required
            "trigger_type": "time",               // auto | time | click (default auto)
            "trigger_config": {"time_sec": 10},   // Required for time
            "priority": 0                         // Lower fires first
        }
    """
    data = require_fields(request.get_json(silent=True), 'from_slot_id', 'to_slot_id')

    trigger_type = data.get('trigger_type', 'auto')
    trigger_config = _validate_trigger(trigger_type, data.get('trigger_config'))
    try:
        priority = int(data.get('priority') or 0)
    except (TypeError, ValueError):
        raise ValidationError('priority must be an integer')

    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')
        from_slot = _project_uuid_field(db, project.id, data['from_slot_id'], Slot, 'Slot')
        to_slot = _project_uuid_field(db, project.id, data['to_slot_id'], Slot, 'Slot')

        transition = SlotTransition(
            from_slot_id=from_slot.id,
            to_slot_id=to_slot.id,
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            priority=priority,
        )
        db.add(transition)
        db.commit()
        db.refresh(transition)
        return jsonify(transition.to_dict()), 201
    finally:
        db.close()


@admin_bp.route('/transitions/<uuid:transition_id>', methods=['DELETE'])
@require_api_key
def delete_transition(transition_id: UUID):
    db = SessionLocal()
    try:
        transition = _get_or_404(db, SlotTransition, transition_id, 'Transition')
        db.delete(transition)
        db.commit()
        return jsonify({'success': True, 'deleted_id': str(transition_id)}), 200
    finally:
        db.close()


# Conversion rules

@admin_bp.route('/projects/<uuid:project_id>/rules', methods=['POST'])
@require_api_key
def create_rule(project_id: UUID):
    """
    Create a conversion rule.

    Request body:
        {
            "name": "Reached checkout",                  // Required
            "event_type": "slot_reached",                // Required
            "condition": {"slot_id": "uuid"},            // Optional: slot_id, video_id, url_pattern
            "is_active": true                            // Optional
        }
    """
    data = require_fields(request.get_json(silent=True), 'name', 'event_type')

    db = SessionLocal()
    try:
        project = _get_or_404(db, Project, project_id, 'Project')
        condition = _validate_rule(db, project.id, data['event_type'], data.get('condition'))
        rule = ConversionRule(
            project_id=project.id,
            name=data['name'],
            event_type=data['event_type'],
            condition=condition,
            is_active=bool(data.get('is_active', True)),
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return jsonify(rule.to_dict()), 201
    finally:
        db.close()


@admin_bp.route('/projects/<uuid:project_id>/rules', methods=['GET'])
@require_api_key
def list_rules(project_id: UUID):
    db = SessionLocal()
    try:
        _get_or_404(db, Project, project_id, 'Project')
        rules = db.query(ConversionRule).filter(
            ConversionRule.project_id == project_id
        ).order_by(ConversionRule.created_at.asc()).all()
        return jsonify({'rules': [r.to_dict() for r in rules], 'count': len(rules)}), 200
    finally:
        db.close()


@admin_bp.route('/rules/<uuid:rule_id>', methods=['PUT'])
@require_api_key
def update_rule(rule_id: UUID):
    data = request.get_json(silent=True)
    if not data:
        raise ValidationError('Request body is required')

    db = SessionLocal()
    try:
        rule = _get_or_404(db, ConversionRule, rule_id, 'Conversion rule')

        event_type = data.get('event_type', rule.event_type)
        condition = data['condition'] if 'condition' in data else rule.condition
        rule.condition = _validate_rule(db, rule.project_id, event_type, condition)
        rule.event_type = event_type
        if 'name' in data:
            rule.name = data['name']
        if 'is_active' in data:
            rule.is_active = bool(data['is_active'])

        db.commit()
        db.refresh(rule)
        return jsonify(rule.to_dict()), 200
    finally:
        db.close()


@admin_bp.route('/rules/<uuid:rule_id>', methods=['DELETE'])
@require_api_key
def delete_rule(rule_id: UUID):
    db = SessionLocal()
    try:
        rule = _get_or_404(db, ConversionRule, rule_id, 'Conversion rule')
        db.delete(rule)
        db.commit()
        return jsonify({'success': True, 'deleted_id': str(rule_id)}), 200
    finally:
        db.close()


# Analytics

@admin_bp.route('/projects/<uuid:project_id>/analytics', methods=['GET'])
@require_api_key
def project_analytics(project_id: UUID):
    """
    Dashboard analytics for a project.

    Query parameters:
        days: Number of days to analyze (default 30, max 365)
    """
    try:
        days = int(request.args.get('days', 30))
    except ValueError:
        raise ValidationError('days must be an integer')
    if days < 1 or days > 365:
        raise ValidationError('days must be between 1 and 365')

    db = SessionLocal()
    try:
        _get_or_404(db, Project, project_id, 'Project')
        analytics = get_project_analytics(db, project_id, days=days)
        analytics['project_id'] = str(project_id)
        return jsonify(analytics), 200
    finally:
        db.close()
