"""Tests for the health and metrics API"""

import pytest
from fastapi.testclient import TestClient

from harvester.api.main import create_app
from harvester.database import SQLiteRecordStore
from harvester.scraper.core.orchestrator import ScraperOrchestrator
from harvester.scraper.models import ScrapingSession
from standardization import DataNormalizer


@pytest.fixture
def orchestrator():
    return ScraperOrchestrator()


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {'healthy': True, 'issues': []}

    def test_statistics(self, client):
        data = client.get("/statistics").json()
        assert 'eventbrite' in data['registered_sources']
        assert data['sessions']['running'] == 0

    def test_metrics_empty(self, client):
        data = client.get("/metrics").json()
        assert data['aggregate']['sessions'] == 0
        assert data['sessions'] == []


class TestSessionEndpoints:
    def test_unknown_session(self, client):
        assert client.get("/sessions/unknown").status_code == 404
        assert client.post("/sessions/unknown/cancel").status_code == 404

    def test_cancel_pending_session(self, client, orchestrator):
        session = ScrapingSession(job_id='j', target_id='t', source='generic')
        orchestrator.sessions[session.id] = session

        response = client.post(f"/sessions/{session.id}/cancel")

        assert response.json() == {'id': session.id, 'ok': True}
        assert client.get(f"/sessions/{session.id}").json()['status'] == 'cancelled'
        assert client.get("/sessions", params={'active': True}).json() == []


class TestCircuitEndpoints:
    def test_reset_unknown_circuit(self, client):
        assert client.post("/circuits/x/reset").status_code == 404

    def test_reset_known_circuit(self, client, orchestrator):
        breaker = orchestrator.circuit_breakers.get("x")
        for _ in range(5):
            breaker.record_failure()
        assert client.get("/circuits").json()['x']['state'] == 'open'

        response = client.post("/circuits/x/reset")

        assert response.status_code == 200
        assert not orchestrator.circuit_breakers.is_open("x")


class TestEventEndpoints:
    def test_events_without_store(self, client):
        assert client.get("/events").status_code == 404

    def test_events_from_store(self, orchestrator, raw_batch, tmp_path):
        store = SQLiteRecordStore(str(tmp_path / "events.db"))
        store.upsert_events(DataNormalizer().normalize_batch(raw_batch).events)
        client = TestClient(create_app(orchestrator, store))

        data = client.get("/events").json()
        assert data['count'] == 2

        music = client.get("/events", params={'category': 'Music'}).json()
        assert [e['title'] for e in music['events']] == ['Jazz Night']
        assert client.get("/events", params={'limit': 1000}).status_code == 422
        store.close()
