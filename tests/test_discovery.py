"""
Tests de l'orchestrateur de découverte et du calcul des métriques
"""

import threading

import pytest

from conftest import FakeClient, FakeIdentity
from uem_agent import __version__
from uem_agent.discovery import DISCOVERY_VERSION, DiscoveryOrchestrator, calculate_metrics


class StaticCollector:

    def __init__(self, category, data=None, error=None):
        self.category = category
        self.data = data or {}
        self.error = error

    def collect(self):
        if self.error is not None:
            raise self.error
        return self.data


class BlockingCollector(StaticCollector):
    """Collecteur qui attend un signal avant de rendre son résultat"""

    def __init__(self, category):
        super().__init__(category)
        self.started = threading.Event()
        self.release = threading.Event()

    def collect(self):
        self.started.set()
        self.release.wait(5)
        return {'discoveryTimestamp': 'now'}


HARDWARE = {
    'processors': [{'name': 'cpu0'}, {'name': 'cpu1'}],
    'memory': [{'capacity': 8}],
    'networkAdapters': [{'name': 'eth0'}],
}
SOFTWARE = {'installedPrograms': [{'name': 'git'}, {'name': 'curl'}, {'name': 'vim'}], 'services': [{}]}


def collectors(security=None):
    return [
        StaticCollector('hardware', HARDWARE),
        StaticCollector('software', SOFTWARE),
        security or StaticCollector('security', {'userAccounts': [{'name': 'root'}]}),
    ]


@pytest.fixture
def make_orchestrator(agent_config, agent_logger, store):
    def factory(client=None, identity=None, collector_list=None):
        return DiscoveryOrchestrator(agent_config, agent_logger, identity or FakeIdentity(),
                                     client or FakeClient(), store, collectors=collector_list or collectors())
    return factory


class TestDiscoverySession:

    def test_session_transmitted(self, make_orchestrator, store):
        client = FakeClient()
        orchestrator = make_orchestrator(client=client)

        assert orchestrator.run_discovery() is True

        post = client.posts[0]
        session = post['payload']
        assert post['path'] == '/api/agents/agent-1/enterprise-discovery'
        assert post['omit_none'] is True
        assert post['timeout'] == client.long_timeout
        assert post['headers'] == {'X-Discovery-Session-Id': session['sessionId'], 'X-Agent-Version': __version__}
        assert session['agentId'] == 'agent-1'
        assert session['discoveryVersion'] == DISCOVERY_VERSION
        assert session['discoveryMetrics']['softwareItemCount'] == 3
        assert store.is_session_transmitted(session['sessionId'])
        assert store.get_audit_events('discovery_transmitted')[0]['reference_id'] == session['sessionId']

    def test_components_persisted_per_category(self, make_orchestrator, store):
        session = make_orchestrator().collect_session()

        components = store.get_discovery_components(session['sessionId'])

        assert set(components) == {'hardware', 'software', 'security'}
        assert components['hardware'] == HARDWARE

    def test_failing_collector_leaves_timestamp_only(self, make_orchestrator):
        failing = StaticCollector('security', error=RuntimeError("access denied"))
        orchestrator = make_orchestrator(collector_list=collectors(security=failing))

        session = orchestrator.collect_session()

        assert list(session['security']) == ['discoveryTimestamp']
        assert session['hardware'] == HARDWARE
        metrics = session['discoveryMetrics']
        assert metrics['userAccountCount'] == 0
        assert metrics['securityPolicyCount'] == 0
        assert metrics['firewallEnabled'] is False

    def test_transmission_failure_is_audited(self, make_orchestrator, store):
        client = FakeClient(post_results=[(False, "HTTP 500")])
        orchestrator = make_orchestrator(client=client)

        assert orchestrator.run_discovery() is False

        session_id = orchestrator.last_session['sessionId']
        assert not store.is_session_transmitted(session_id)
        assert store.get_audit_events('discovery_failed')[0]['detail'] == {'error': "HTTP 500"}
        assert orchestrator.get_status()['last_success'] is False
        assert len(client.posts) == 1

    def test_unregistered_agent_skips_discovery(self, make_orchestrator):
        client = FakeClient()
        orchestrator = make_orchestrator(client=client, identity=FakeIdentity(registered=False))

        assert orchestrator.run_discovery() is False
        assert client.posts == []
        assert orchestrator.session_count == 0

    def test_single_session_at_a_time(self, make_orchestrator):
        blocking = BlockingCollector('hardware')
        client = FakeClient()
        orchestrator = make_orchestrator(client=client, collector_list=[blocking])
        outcome = []

        worker = threading.Thread(target=lambda: outcome.append(orchestrator.run_discovery()))
        worker.start()
        assert blocking.started.wait(5)

        assert orchestrator.is_running
        assert orchestrator.trigger_discovery() is False

        blocking.release.set()
        worker.join(5)
        assert outcome == [True]
        assert not orchestrator.is_running
        assert len(client.posts) == 1


class TestMetrics:

    def test_missing_snapshots_give_zero_metrics(self):
        metrics = calculate_metrics(None, None, None)

        assert metrics['hardwareComponentCount'] == 0
        assert metrics['softwareItemCount'] == 0
        assert metrics['tpmEnabled'] is False
        assert metrics['uacEnabled'] is False

    def test_counts(self):
        metrics = calculate_metrics(HARDWARE, SOFTWARE, {
            'groupMemberships': [{}, {}],
            'bitLockerInfo': {'volumes': [{'mountPoint': 'C:'}]},
            'tpmInfo': {'isPresent': True, 'isReady': True},
        })

        assert metrics['hardwareComponentCount'] == 4
        assert metrics['processorCount'] == 2
        assert metrics['networkAdapterCount'] == 1
        assert metrics['serviceCount'] == 1
        assert metrics['groupCount'] == 2
        assert metrics['encryptedVolumeCount'] == 1
        assert metrics['securityPolicyCount'] == 2
        assert metrics['tpmEnabled'] is True

    def test_firewall_enabled_if_any_profile(self):
        security = {'firewallStatus': {'domainProfileEnabled': False, 'publicProfileEnabled': True}}
        assert calculate_metrics({}, {}, security)['firewallEnabled'] is True

    def test_null_collections_tolerated(self):
        metrics = calculate_metrics({'processors': None}, {'installedPrograms': None}, {'firewallStatus': None})
        assert metrics['processorCount'] == 0
        assert metrics['firewallEnabled'] is False
