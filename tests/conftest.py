"""
Fixtures partagées des tests de l'agent

Fournit une configuration dans un dossier temporaire, un logger, une base
SQLite temporaire et des doublures pour le client HTTP, l'identité et le
service de scripts.
"""

import threading
from concurrent.futures import Future

import pytest

from uem_agent.core.config import AgentConfig
from uem_agent.core.logger import AgentLogger
from uem_agent.core.store import LocalStore
from uem_agent.execution.models import ProcessResult, ProcessStatus, ScriptExecutionResult


CONFIG_TEMPLATE = """
[server]
url = http://control-plane.test
agent_id = agent-1
auth_token = token-1
timeout = 5
long_timeout = 60

[agent]
log_level = DEBUG
heartbeat_interval = 30

[policy]
retry_backoff_unit = 0
retry_backoff_cap = 0

[storage]
database = {database}

[logging]
log_file = {log_file}
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "agent.conf"
    path.write_text(CONFIG_TEMPLATE.format(
        database=tmp_path / "agent.db",
        log_file=tmp_path / "agent.log",
    ), encoding="utf-8")
    return str(path)


@pytest.fixture
def agent_config(config_path):
    return AgentConfig(config_path, environ={})


@pytest.fixture
def agent_logger(agent_config):
    return AgentLogger(agent_config, name="UEMEndpointAgent.tests", console=False)


@pytest.fixture
def store(tmp_path, agent_logger):
    local_store = LocalStore(str(tmp_path / "store.db"), agent_logger)
    yield local_store
    local_store.close()


class FakeIdentity:
    """Identité toujours enregistrée, invalidations comptées"""

    def __init__(self, agent_id="agent-1", token="token-1", registered=True):
        self.agent_id = agent_id
        self.token = token
        self.registered = registered
        self.invalidations = 0

    def is_registered(self):
        return self.registered

    def ensure_registered(self):
        return self.registered

    def invalidate(self):
        self.invalidations += 1


class FakeClient:
    """
    Client du plan de contrôle enregistrant les appels

    post_results : réponses successives de post_json (la dernière est répétée)
    get_response : réponse de get_json
    """

    long_timeout = 60

    def __init__(self, post_results=None, get_response=(200, [])):
        self.post_results = list(post_results or [(True, "HTTP 200")])
        self.get_response = get_response
        self.posts = []
        self.gets = []

    def post_json(self, path, payload, headers=None, timeout=None, omit_none=False):
        self.posts.append({
            'path': path,
            'payload': payload,
            'headers': headers,
            'timeout': timeout,
            'omit_none': omit_none,
        })
        if len(self.post_results) > 1:
            return self.post_results.pop(0)
        return self.post_results[0]

    def get_json(self, path, timeout=None):
        self.gets.append(path)
        return self.get_response

    def paths(self):
        return [post['path'] for post in self.posts]


class FakeProcessExecutor:
    """Exécuteur de processus qui ne lance rien"""

    def __init__(self, result=None):
        self.result = result or ProcessResult(status=ProcessStatus.COMPLETED, exit_code=0, stdout="ok\n")
        self.calls = []

    def run(self, executable, args=None, input_text=None, timeout=300, cancel_event=None, env=None):
        self.calls.append({
            'executable': executable,
            'args': list(args or []),
            'input_text': input_text,
            'timeout': timeout,
            'env': env,
        })
        return self.result


class FakeScriptService:
    """
    Service de scripts dont l'issue dépend du contenu du script

    outcomes : {contenu: [bool, ...]} consommés tentative après tentative ;
    un contenu absent réussit toujours.
    """

    def __init__(self, outcomes=None, delay=0.0, raise_on=None):
        self.outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self.delay = delay
        self.raise_on = raise_on
        self.requests = []
        self.executor = FakeProcessExecutor()

    def execute(self, request, cancel_event=None):
        self.requests.append(request)
        if self.raise_on is not None and request.script_content == self.raise_on:
            raise RuntimeError("interpreter exploded")
        if self.delay:
            threading.Event().wait(self.delay)

        planned = self.outcomes.get(request.script_content)
        success = True
        if planned:
            success = planned.pop(0) if len(planned) > 1 else planned[0]

        if success:
            return ScriptExecutionResult(success=True, exit_code=0, output=f"{request.script_content}\n")
        return ScriptExecutionResult(success=False, exit_code=1, output="", error="boom")

    def get_supported_script_types(self):
        return ['shell', 'bash', 'python']

    def contents(self):
        return [request.script_content for request in self.requests]


class ImmediateExecutor:
    """Pool qui exécute les tâches soumises dans le thread appelant"""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def fake_identity():
    return FakeIdentity()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fake_scripts():
    return FakeScriptService()


@pytest.fixture
def immediate_executor():
    return ImmediateExecutor()
