"""
Tests du client HTTP, de l'identité et du heartbeat

Les appels réseau passent par une session requests simulée.
"""

import json

import requests

from conftest import FakeClient, FakeIdentity
from uem_agent import __version__
from uem_agent.core.heartbeat import HeartbeatService
from uem_agent.core.identity import AgentIdentity, hardware_fingerprint
from uem_agent.core.sender import ControlPlaneClient


class FakeResponse:

    def __init__(self, status_code=200, data=None, text=''):
        self.status_code = status_code
        self.data = data
        self.text = text

    def json(self):
        if self.data is None:
            raise ValueError("no json")
        return self.data


class FakeSession:
    """Session requests : réponses préparées ou exception à lever"""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def _call(self, method, url, **kwargs):
        self.calls.append({'method': method, 'url': url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self._call('POST', url, **kwargs)

    def get(self, url, **kwargs):
        return self._call('GET', url, **kwargs)


class TestControlPlaneClient:

    def test_post_sends_camel_case_with_bearer(self, agent_config, agent_logger):
        session = FakeSession()
        client = ControlPlaneClient(agent_config, agent_logger, FakeIdentity(), session=session)

        success, message = client.post_json('/api/x', {'a': 1, 'b': None}, headers={'X-Extra': '1'}, omit_none=True)

        assert (success, message) == (True, "HTTP 200")
        call = session.calls[0]
        assert call['url'] == 'http://control-plane.test/api/x'
        assert json.loads(call['data'].decode('utf-8')) == {'a': 1}
        assert call['headers']['Authorization'] == 'Bearer token-1'
        assert call['headers']['User-Agent'] == f'UEMEndpointAgent/{__version__}'
        assert call['headers']['X-Extra'] == '1'
        assert call['timeout'] == 5

    def test_unauthorized_invalidates_identity(self, agent_config, agent_logger):
        identity = FakeIdentity()
        client = ControlPlaneClient(agent_config, agent_logger, identity,
                                    session=FakeSession(FakeResponse(401)))

        success, _ = client.post_json('/api/x', {})

        assert success is False
        assert identity.invalidations == 1
        assert client.get_stats()['total_failures'] == 1

    def test_timeout_is_a_result(self, agent_config, agent_logger):
        client = ControlPlaneClient(agent_config, agent_logger, FakeIdentity(),
                                    session=FakeSession(error=requests.exceptions.Timeout()))

        success, message = client.post_json('/api/x', {}, timeout=60)

        assert success is False
        assert "60" in message

    def test_get_json(self, agent_config, agent_logger):
        client = ControlPlaneClient(agent_config, agent_logger, FakeIdentity(),
                                    session=FakeSession(FakeResponse(200, [{'executionId': 'e1'}])))

        assert client.get_json('/api/pending') == (200, [{'executionId': 'e1'}])

    def test_get_json_not_found_and_network_error(self, agent_config, agent_logger):
        not_found = ControlPlaneClient(agent_config, agent_logger, FakeIdentity(),
                                       session=FakeSession(FakeResponse(404)))
        offline = ControlPlaneClient(agent_config, agent_logger, FakeIdentity(),
                                     session=FakeSession(error=requests.exceptions.ConnectionError("down")))

        assert not_found.get_json('/api/pending') == (404, None)
        assert offline.get_json('/api/pending') == (0, None)


class TestAgentIdentity:

    def test_configured_identity_skips_registration(self, agent_config, agent_logger):
        session = FakeSession()
        identity = AgentIdentity(agent_config, agent_logger, session=session)

        assert identity.ensure_registered() is True
        identity.invalidate()

        assert identity.token == 'token-1'
        assert session.calls == []

    def test_dynamic_registration(self, agent_config, agent_logger):
        agent_config.set('server', 'agent_id', '')
        agent_config.set('server', 'auth_token', '')
        session = FakeSession(FakeResponse(200, {'agentId': 'agent-42', 'jwt': 'jwt-42'}))
        identity = AgentIdentity(agent_config, agent_logger, session=session)

        assert identity.ensure_registered() is True

        assert (identity.agent_id, identity.token) == ('agent-42', 'jwt-42')
        call = session.calls[0]
        assert call['url'] == 'http://control-plane.test/api/agents/register'
        assert call['json']['hardwareFingerprint'] == hardware_fingerprint()

        identity.invalidate()
        assert not identity.is_registered()

    def test_registration_refused(self, agent_config, agent_logger):
        agent_config.set('server', 'auth_token', '')
        identity = AgentIdentity(agent_config, agent_logger, session=FakeSession(FakeResponse(403)))

        assert identity.ensure_registered() is False

    def test_registration_without_token(self, agent_config, agent_logger):
        agent_config.set('server', 'auth_token', '')
        session = FakeSession(FakeResponse(200, {'agentId': 'agent-42'}))

        assert AgentIdentity(agent_config, agent_logger, session=session).ensure_registered() is False


class TestHeartbeat:

    def test_heartbeat_posted(self, agent_config, agent_logger):
        client = FakeClient()
        heartbeat = HeartbeatService(agent_config, agent_logger, FakeIdentity(), client)

        assert heartbeat.send_heartbeat() is True

        post = client.posts[0]
        assert post['path'] == '/api/agents/agent-1/heartbeat'
        assert post['payload'].unique_id == hardware_fingerprint()
        assert post['payload'].agent_version == __version__

    def test_heartbeat_waits_for_registration(self, agent_config, agent_logger):
        client = FakeClient()
        heartbeat = HeartbeatService(agent_config, agent_logger, FakeIdentity(registered=False), client)

        assert heartbeat.send_heartbeat() is False
        assert client.posts == []
