"""
Tests for the widget runtime API endpoints.
"""
import uuid

import pytest

from bonsai.models import ConversionEvent, WidgetEvent, WidgetSession
from tests.fixtures.test_data import ALLOWED_ORIGIN, OTHER_ORIGIN, WIDGET_KEY


def init_body(project, **overrides):
    body = {
        'projectId': str(project.id),
        'widgetKey': WIDGET_KEY,
        'visitorId': 'visitor-42',
        'deviceType': 'desktop',
        'browser': 'Firefox',
    }
    body.update(overrides)
    return body


class TestWidgetInit:
    """Test POST /widget/init."""

    def test_init_returns_entry_slot(self, client, db, graph):
        """Should start a session on the entry slot with its transitions."""
        response = client.post('/widget/init', json=init_body(graph.project))

        assert response.status_code == 200
        data = response.get_json()
        assert data['created'] is True
        assert data['slot']['id'] == str(graph.intro.id)
        assert data['slot']['detailButton'] == {
            'text': 'Learn more', 'url': 'https://shop.example.com/about'
        }
        assert data['slot']['video']['id'] == str(graph.videos.intro.id)
        transitions = {t['triggerType']: t for t in data['transitions']}
        assert [t['priority'] for t in data['transitions']] == [0, 0, 1]
        assert data['transitions'][-1]['id'] == str(graph.transitions.intro_time.id)
        assert transitions['time']['triggerConfig'] == {'time_sec': 5}
        assert transitions['auto']['toSlot'] == {
            'id': str(graph.products.id), 'name': 'Products'
        }

        session = db.get(WidgetSession, uuid.UUID(data['sessionId']))
        assert session.visitor_id == 'visitor-42'
        assert session.browser == 'Firefox'

    def test_init_reuses_session(self, client, db, graph, widget_session):
        response = client.post(
            '/widget/init', json=init_body(graph.project, sessionId=str(widget_session.id))
        )

        data = response.get_json()
        assert data['created'] is False
        assert data['sessionId'] == str(widget_session.id)
        assert db.query(WidgetSession).count() == 1

    def test_init_twice_same_session(self, client, db, graph):
        first = client.post('/widget/init', json=init_body(graph.project)).get_json()
        second = client.post(
            '/widget/init', json=init_body(graph.project, sessionId=first['sessionId'])
        ).get_json()

        assert second['sessionId'] == first['sessionId']
        assert db.query(WidgetSession).count() == 1

    def test_wrong_widget_key(self, client, db, graph):
        """Should return 403 and create no session."""
        response = client.post('/widget/init', json=init_body(graph.project, widgetKey='wrong'))

        assert response.status_code == 403
        assert response.get_json() == {'error': 'Invalid widget key'}
        assert db.query(WidgetSession).count() == 0

    def test_missing_fields(self, client, graph):
        response = client.post('/widget/init', json={'projectId': str(graph.project.id)})

        assert response.status_code == 400
        assert 'widgetKey' in response.get_json()['error']

    def test_unknown_project(self, client, db):
        response = client.post('/widget/init', json={
            'projectId': str(uuid.uuid4()), 'widgetKey': WIDGET_KEY
        })

        assert response.status_code == 404

    def test_project_without_slots(self, client, db, project):
        response = client.post('/widget/init', json=init_body(project))

        assert response.status_code == 404
        assert response.get_json()['error'] == 'No entry point configured'

    def test_suspended_organization(self, client, db, graph, organization):
        organization.status = 'suspended'
        db.commit()

        response = client.post('/widget/init', json=init_body(graph.project))

        assert response.status_code == 403

    def test_origin_enforced_in_production(self, client, db, graph, production):
        blocked = client.post(
            '/widget/init', json=init_body(graph.project), headers={'Origin': OTHER_ORIGIN}
        )
        allowed = client.post(
            '/widget/init', json=init_body(graph.project), headers={'Origin': ALLOWED_ORIGIN}
        )

        assert blocked.status_code == 403
        assert blocked.get_json()['error'] == 'Origin not allowed'
        assert allowed.status_code == 200

    def test_origin_ignored_in_development(self, client, db, graph):
        response = client.post(
            '/widget/init', json=init_body(graph.project), headers={'Origin': OTHER_ORIGIN}
        )

        assert response.status_code == 200


class TestWidgetNavigate:
    """Test POST /widget/navigate."""

    def test_navigate_to_slot(self, client, graph, widget_session):
        response = client.post('/widget/navigate', json={
            'sessionId': str(widget_session.id),
            'slotId': str(graph.checkout.id),
            'widgetKey': WIDGET_KEY,
        })

        assert response.status_code == 200
        data = response.get_json()
        assert data['slot']['name'] == 'Checkout'
        assert data['slot']['ctaButton']['text'] == 'Buy now'
        assert data['transitions'] == []

    def test_unknown_session(self, client, graph):
        response = client.post('/widget/navigate', json={
            'sessionId': str(uuid.uuid4()),
            'slotId': str(graph.checkout.id),
            'widgetKey': WIDGET_KEY,
        })

        assert response.status_code == 404

    def test_slot_of_other_project(self, client, graph, widget_session):
        response = client.post('/widget/navigate', json={
            'sessionId': str(widget_session.id),
            'slotId': str(uuid.uuid4()),
            'widgetKey': WIDGET_KEY,
        })

        assert response.status_code == 404
        assert response.get_json() == {'error': 'Slot not found'}

    def test_wrong_key(self, client, graph, widget_session):
        response = client.post('/widget/navigate', json={
            'sessionId': str(widget_session.id),
            'slotId': str(graph.checkout.id),
            'widgetKey': 'wrong',
        })

        assert response.status_code == 403


class TestWidgetResolve:
    """
    Test POST /widget/resolve.

    From intro: click -> checkout (priority 0), time 5s -> checkout
    (priority 1), auto -> products.
    """

    def resolve(self, client, graph, widget_session, trigger):
        return client.post('/widget/resolve', json={
            'sessionId': str(widget_session.id),
            'slotId': str(graph.intro.id),
            'widgetKey': WIDGET_KEY,
            'trigger': trigger,
        })

    def test_time_below_threshold(self, client, graph, widget_session):
        response = self.resolve(client, graph, widget_session, {'type': 'time', 'elapsed': 3})

        assert response.status_code == 200
        assert response.get_json() == {'transition': None, 'slot': None, 'transitions': []}

    def test_time_past_threshold(self, client, graph, widget_session):
        data = self.resolve(
            client, graph, widget_session, {'type': 'time', 'elapsed': 6}
        ).get_json()

        assert data['transition']['id'] == str(graph.transitions.intro_time.id)
        assert data['slot']['id'] == str(graph.checkout.id)

    def test_click_ignores_elapsed(self, client, graph, widget_session):
        for elapsed in (0, 2, 100):
            data = self.resolve(
                client, graph, widget_session, {'type': 'click', 'elapsed': elapsed}
            ).get_json()

            assert data['transition']['id'] == str(graph.transitions.intro_click.id)

    def test_auto_moves_to_products(self, client, graph, widget_session):
        data = self.resolve(client, graph, widget_session, {'type': 'auto'}).get_json()

        assert data['slot']['id'] == str(graph.products.id)
        assert data['transitions'][0]['id'] == str(graph.transitions.products_auto.id)

    def test_unknown_trigger_type(self, client, graph, widget_session):
        response = self.resolve(client, graph, widget_session, {'type': 'hover'})

        assert response.status_code == 400

    def test_trigger_not_an_object(self, client, graph, widget_session):
        response = self.resolve(client, graph, widget_session, 'click')

        assert response.status_code == 400


class TestWidgetEvents:
    """Test POST /widget/events."""

    def test_creates_session_when_missing(self, client, db, graph):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'event_type': 'widget_open',
            'page_url': 'https://shop.example.com/p/1',
        })

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        session_id = uuid.UUID(data['session_id'])
        assert db.get(WidgetSession, session_id) is not None
        assert db.query(WidgetEvent).filter(WidgetEvent.session_id == session_id).count() == 1

    def test_existing_session_not_echoed(self, client, db, graph, widget_session):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'session_id': str(widget_session.id),
            'event_type': 'video_start',
            'slot_id': str(graph.intro.id),
            'video_id': str(graph.videos.intro.id),
        })

        assert response.status_code == 200
        assert response.get_json() == {'success': True}

    def test_click_without_slot_id(self, client, db, graph, widget_session):
        """Should return 400 and write no row."""
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'session_id': str(widget_session.id),
            'event_type': 'click',
            'video_id': str(graph.videos.intro.id),
        })

        assert response.status_code == 400
        assert 'slot_id' in response.get_json()['error']
        assert db.query(WidgetEvent).count() == 0

    def test_unknown_event_type(self, client, db, graph):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id), 'event_type': 'teleport'
        })

        assert response.status_code == 400
        assert db.query(WidgetSession).count() == 0

    def test_missing_project_id(self, client):
        response = client.post('/widget/events', json={'event_type': 'widget_open'})

        assert response.status_code == 400

    @pytest.mark.parametrize('project_id', ['not-a-uuid', str(uuid.uuid4())])
    def test_invalid_project_id(self, client, db, project_id):
        response = client.post('/widget/events', json={
            'project_id': project_id, 'event_type': 'widget_open'
        })

        assert response.status_code == 404

    def test_wrong_widget_key_when_given(self, client, db, graph):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'event_type': 'widget_open',
            'widget_key': 'wrong',
        })

        assert response.status_code == 403

    def test_origin_enforced_in_production(self, client, db, graph, production):
        response = client.post(
            '/widget/events',
            json={'project_id': str(graph.project.id), 'event_type': 'widget_open'},
            headers={'Origin': OTHER_ORIGIN}
        )

        assert response.status_code == 403
        assert db.query(WidgetEvent).count() == 0

    def test_conversion_reported(self, client, db, graph, widget_session, checkout_rule):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'session_id': str(widget_session.id),
            'event_type': 'slot_reached',
            'slot_id': str(graph.checkout.id),
            'video_id': str(graph.videos.checkout.id),
        })

        assert response.get_json() == {'success': True, 'conversions': 1}
        db.expire_all()
        assert db.get(WidgetSession, widget_session.id).converted is True
        assert db.query(ConversionEvent).count() == 1

    def test_infinite_played_seconds(self, client, db, graph, widget_session):
        """JSON Infinity is rejected as a bad request."""
        body = (
            '{"project_id": "%s", "session_id": "%s", "event_type": "video_view",'
            ' "slot_id": "%s", "video_id": "%s", "played_seconds": Infinity}'
        ) % (graph.project.id, widget_session.id, graph.intro.id, graph.videos.intro.id)

        response = client.post('/widget/events', data=body, content_type='application/json')

        assert response.status_code == 400
        assert 'played_seconds' in response.get_json()['error']
        assert db.query(WidgetEvent).count() == 0

    def test_unknown_slot_starts_no_session(self, client, db, graph):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'event_type': 'slot_reached',
            'slot_id': str(uuid.uuid4()),
            'video_id': str(graph.videos.intro.id),
        })

        assert response.status_code == 404
        assert db.query(WidgetSession).count() == 0
        assert db.query(WidgetEvent).count() == 0

    def test_unknown_rule_starts_no_session(self, client, db, graph):
        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'event_type': 'conversion',
            'rule_id': str(uuid.uuid4()),
        })

        assert response.status_code == 404
        assert db.query(WidgetSession).count() == 0

    def test_preflight(self, client):
        response = client.options('/widget/events')

        assert response.status_code == 204
        assert response.headers['Access-Control-Allow-Origin'] == '*'
        assert 'POST' in response.headers['Access-Control-Allow-Methods']
        assert 'Content-Type' in response.headers['Access-Control-Allow-Headers']


class TestLegacyEvent:
    """Test POST /widget/event."""

    def test_records_event(self, client, db, graph, widget_session):
        response = client.post('/widget/event', json={
            'sessionId': str(widget_session.id),
            'eventType': 'click',
            'widgetKey': WIDGET_KEY,
            'data': {
                'slotId': str(graph.checkout.id),
                'videoId': str(graph.videos.checkout.id),
                'button_type': 'cta',
            },
        })

        assert response.status_code == 200
        row = db.query(WidgetEvent).one()
        assert row.event_type == 'click'
        assert row.button_type == 'cta'

    def test_wrong_key(self, client, db, graph, widget_session):
        response = client.post('/widget/event', json={
            'sessionId': str(widget_session.id),
            'eventType': 'session_end',
            'widgetKey': 'wrong',
        })

        assert response.status_code == 403
        assert db.query(WidgetEvent).count() == 0


class TestWidgetConfig:
    """Test GET /widget/config/<project_id>."""

    def test_full_graph(self, client, graph):
        response = client.get(f'/widget/config/{graph.project.id}')

        assert response.status_code == 200
        data = response.get_json()
        assert data['projectId'] == str(graph.project.id)
        assert data['entrySlotId'] == str(graph.intro.id)
        assert [s['name'] for s in data['slots']] == ['Intro', 'Products', 'Checkout']
        assert data['slots'][0]['isEntryPoint'] is True
        assert len(data['transitions']) == 4
        time_edge = next(t for t in data['transitions'] if t['triggerType'] == 'time')
        assert time_edge['fromSlotId'] == str(graph.intro.id)
        assert time_edge['toSlotId'] == str(graph.checkout.id)
        assert response.headers['Cache-Control'] == 'public, max-age=60'

    def test_origin_echoed(self, client, graph):
        response = client.get(
            f'/widget/config/{graph.project.id}', headers={'Origin': ALLOWED_ORIGIN}
        )

        assert response.headers['Access-Control-Allow-Origin'] == ALLOWED_ORIGIN
        assert response.headers['Vary'] == 'Origin'

    def test_disallowed_origin_in_production(self, client, graph, production):
        response = client.get(
            f'/widget/config/{graph.project.id}', headers={'Origin': OTHER_ORIGIN}
        )

        assert response.status_code == 403

    def test_allowed_origin_in_production(self, client, graph, production):
        response = client.get(
            f'/widget/config/{graph.project.id}', headers={'Origin': ALLOWED_ORIGIN}
        )

        assert response.status_code == 200

    def test_unknown_project(self, client, db):
        response = client.get(f'/widget/config/{uuid.uuid4()}')

        assert response.status_code == 404


class TestWidgetJourney:
    """A visitor goes from the entry slot to checkout and converts."""

    def test_rule_authored_with_uppercase_id(self, client, db, graph, widget_session, auth_headers):
        created = client.post(f'/api/v1/admin/projects/{graph.project.id}/rules', json={
            'name': 'Reached checkout',
            'event_type': 'slot_reached',
            'condition': {'slot_id': str(graph.checkout.id).upper()},
        }, headers=auth_headers)
        assert created.status_code == 201

        response = client.post('/widget/events', json={
            'project_id': str(graph.project.id),
            'session_id': str(widget_session.id),
            'event_type': 'slot_reached',
            'slot_id': str(graph.checkout.id),
            'video_id': str(graph.videos.checkout.id),
        })

        assert response.get_json() == {'success': True, 'conversions': 1}
        db.expire_all()
        assert db.query(ConversionEvent).count() == 1

    def test_intro_to_checkout(self, client, db, graph, checkout_rule):
        init = client.post('/widget/init', json=init_body(graph.project)).get_json()
        session_id = init['sessionId']

        def event(event_type, **fields):
            return client.post('/widget/events', json={
                'project_id': str(graph.project.id),
                'session_id': session_id,
                'event_type': event_type,
                **fields,
            })

        event('slot_reached', slot_id=init['slot']['id'], video_id=init['slot']['video']['id'])
        resolved = client.post('/widget/resolve', json={
            'sessionId': session_id,
            'slotId': init['slot']['id'],
            'widgetKey': WIDGET_KEY,
            'trigger': {'type': 'click'},
        }).get_json()
        checkout = resolved['slot']
        reached = event('slot_reached', slot_id=checkout['id'], video_id=checkout['video']['id'])
        event('session_end')

        assert reached.get_json()['conversions'] == 1
        db.expire_all()
        session = db.get(WidgetSession, uuid.UUID(session_id))
        assert session.converted is True
        assert session.ended_at is not None
        kinds = [
            e.event_type for e in db.query(WidgetEvent)
            .filter(WidgetEvent.session_id == session.id)
            .order_by(WidgetEvent.occurred_at.asc())
        ]
        assert kinds.count('slot_reached') == 2
