"""
Project analytics service.

Aggregates sessions, slot views, watch time and conversions for the
operator dashboard.
"""
from collections import OrderedDict
from datetime import timedelta
from typing import Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from bonsai.models.base import utcnow
from bonsai.models.project import ConversionRule, Slot
from bonsai.models.session import ConversionEvent, SlotView, WidgetEvent, WidgetSession


def _rate(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def get_session_stats(db: Session, project_id, start_date, end_date) -> Dict:
    """
    Session totals for a project within a date range.

    Returns:
        Dictionary with total/converted sessions and conversion rate
    """
    base = db.query(WidgetSession).filter(
        WidgetSession.project_id == project_id,
        WidgetSession.started_at >= start_date,
        WidgetSession.started_at <= end_date
    )

    total_sessions = base.count()
    converted_sessions = base.filter(WidgetSession.converted.is_(True)).count()
    total_conversions = db.query(func.count(ConversionEvent.id)).filter(
        ConversionEvent.project_id == project_id,
        ConversionEvent.converted_at >= start_date,
        ConversionEvent.converted_at <= end_date
    ).scalar() or 0

    return {
        'total_sessions': total_sessions,
        'converted_sessions': converted_sessions,
        'total_conversions': total_conversions,
        'conversion_rate': _rate(converted_sessions, total_sessions),
    }


def get_device_breakdown(db: Session, project_id, start_date, end_date) -> List[Dict]:
    """Sessions per device type (pie chart data)."""
    rows = db.query(
        WidgetSession.device_type,
        func.count(WidgetSession.id).label('count')
    ).filter(
        WidgetSession.project_id == project_id,
        WidgetSession.started_at >= start_date,
        WidgetSession.started_at <= end_date
    ).group_by(
        WidgetSession.device_type
    ).order_by(
        func.count(WidgetSession.id).desc()
    ).all()

    return [
        {'name': device or 'unknown', 'value': count}
        for device, count in rows
    ]


def get_daily_series(db: Session, project_id, start_date, end_date) -> List[Dict]:
    """
    Sessions and conversions per day.

    Grouped in Python so the same code runs on SQLite and PostgreSQL.
    Every day of the range is present, including empty ones.
    """
    days = OrderedDict()
    day = start_date.date()
    while day <= end_date.date():
        days[day.isoformat()] = {'date': day.isoformat(), 'sessions': 0, 'conversions': 0}
        day += timedelta(days=1)

    sessions = db.query(WidgetSession.started_at, WidgetSession.converted).filter(
        WidgetSession.project_id == project_id,
        WidgetSession.started_at >= start_date,
        WidgetSession.started_at <= end_date
    ).all()

    for started_at, converted in sessions:
        bucket = days.get(started_at.date().isoformat())
        if bucket is None:
            continue
        bucket['sessions'] += 1
        if converted:
            bucket['conversions'] += 1

    return list(days.values())


def get_slot_performance(db: Session, project_id, start_date, end_date) -> List[Dict]:
    """
    Views and watch time per slot.

    Watch time is the sum of video_view samples (played_ms); a visit that
    reported several samples counts each of them.
    """
    slots = db.query(Slot).filter(
        Slot.project_id == project_id
    ).order_by(Slot.created_at.asc(), Slot.id.asc()).all()

    views = dict(db.query(
        SlotView.slot_id,
        func.count(SlotView.id)
    ).join(
        WidgetSession, WidgetSession.id == SlotView.session_id
    ).filter(
        WidgetSession.project_id == project_id,
        SlotView.started_at >= start_date,
        SlotView.started_at <= end_date
    ).group_by(SlotView.slot_id).all())

    reached = dict(db.query(
        WidgetEvent.slot_id,
        func.count(WidgetEvent.id)
    ).filter(
        WidgetEvent.project_id == project_id,
        WidgetEvent.event_type == 'slot_reached',
        WidgetEvent.occurred_at >= start_date,
        WidgetEvent.occurred_at <= end_date
    ).group_by(WidgetEvent.slot_id).all())

    watch = {
        slot_id: (total or 0, samples)
        for slot_id, total, samples in db.query(
            WidgetEvent.slot_id,
            func.sum(WidgetEvent.played_ms),
            func.count(WidgetEvent.id)
        ).filter(
            WidgetEvent.project_id == project_id,
            WidgetEvent.event_type == 'video_view',
            WidgetEvent.occurred_at >= start_date,
            WidgetEvent.occurred_at <= end_date
        ).group_by(WidgetEvent.slot_id).all()
    }

    conversions = dict(db.query(
        ConversionEvent.slot_id,
        func.count(ConversionEvent.id)
    ).filter(
        ConversionEvent.project_id == project_id,
        ConversionEvent.converted_at >= start_date,
        ConversionEvent.converted_at <= end_date
    ).group_by(ConversionEvent.slot_id).all())

    performance = []
    for slot in slots:
        watch_ms, samples = watch.get(slot.id, (0, 0))
        performance.append({
            'slot_id': str(slot.id),
            'name': slot.name,
            'views': views.get(slot.id, 0),
            'reached': reached.get(slot.id, 0),
            'watch_ms': int(watch_ms),
            'avg_watch_ms': int(watch_ms / samples) if samples else 0,
            'conversions': conversions.get(slot.id, 0),
        })
    return performance


def get_rule_performance(db: Session, project_id, start_date, end_date) -> List[Dict]:
    """Conversions per rule, rules without conversions included."""
    counts = dict(db.query(
        ConversionEvent.rule_id,
        func.count(ConversionEvent.id)
    ).filter(
        ConversionEvent.project_id == project_id,
        ConversionEvent.converted_at >= start_date,
        ConversionEvent.converted_at <= end_date
    ).group_by(ConversionEvent.rule_id).all())

    rules = db.query(ConversionRule).filter(
        ConversionRule.project_id == project_id
    ).order_by(ConversionRule.created_at.asc(), ConversionRule.id.asc()).all()

    return [
        {
            'rule_id': str(rule.id),
            'name': rule.name,
            'event_type': rule.event_type,
            'is_active': bool(rule.is_active),
            'conversions': counts.get(rule.id, 0),
        }
        for rule in rules
    ]


def get_project_analytics(db: Session, project_id, days: int = 30) -> Dict:
    """
    Get comprehensive dashboard analytics for a project.

    Args:
        db: Database session
        project_id: Project UUID
        days: Number of days to analyze

    Returns:
        Dictionary with summary, daily series, device breakdown,
        slot and rule performance
    """
    # Today plus the days - 1 full days before it
    end_date = utcnow()
    start_date = (end_date - timedelta(days=days - 1)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )

    return {
        'summary': get_session_stats(db, project_id, start_date, end_date),
        'daily': get_daily_series(db, project_id, start_date, end_date),
        'device_breakdown': get_device_breakdown(db, project_id, start_date, end_date),
        'slot_performance': get_slot_performance(db, project_id, start_date, end_date),
        'rule_performance': get_rule_performance(db, project_id, start_date, end_date),
        'period_days': days,
    }
