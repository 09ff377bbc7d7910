"""
Tests de l'API locale de statut
"""

import threading

import pytest

from conftest import FakeScriptService
from uem_agent.web import LocalStatusApp


class FakeDiscovery:

    def __init__(self, running=False):
        self.is_running = running
        self.triggered = threading.Event()

    def trigger_discovery(self):
        self.triggered.set()
        return True


@pytest.fixture
def make_client(agent_config, agent_logger, store):
    def factory(discovery=None, status_provider=None):
        app = LocalStatusApp(agent_config, agent_logger, store, FakeScriptService(),
                             discovery=discovery, status_provider=status_provider)
        return app.app.test_client()
    return factory


class TestLocalStatusApi:

    def test_status_merges_provider(self, make_client):
        response = make_client(status_provider=lambda: {'agent_id': 'agent-1'}).get('/api/status')

        assert response.status_code == 200
        data = response.get_json()
        assert data['agent_id'] == 'agent-1'
        assert 'hostname' in data

    def test_status_provider_error(self, make_client):
        def broken():
            raise RuntimeError("store closed")

        response = make_client(status_provider=broken).get('/api/status')

        assert response.status_code == 500
        assert response.get_json() == {'error': "store closed"}

    def test_recent_executions(self, make_client, store):
        store.store_execution_result('e1', {'executionId': 'e1', 'status': 'completed'})

        data = make_client().get('/api/executions?limit=500').get_json()

        assert [e['executionId'] for e in data['executions']] == ['e1']

    def test_script_types(self, make_client):
        assert make_client().get('/api/script-types').get_json() == {'scriptTypes': ['shell', 'bash', 'python']}

    def test_discovery_started(self, make_client):
        discovery = FakeDiscovery()

        response = make_client(discovery=discovery).post('/api/discovery')

        assert response.status_code == 202
        assert response.get_json()['success'] is True
        assert discovery.triggered.wait(5)

    def test_discovery_already_running(self, make_client):
        response = make_client(discovery=FakeDiscovery(running=True)).post('/api/discovery')

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Une découverte est déjà en cours'

    def test_discovery_disabled(self, make_client):
        response = make_client().post('/api/discovery')
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_no_script_execution_route(self, make_client):
        assert make_client().post('/api/execute').status_code == 404
