"""
Tests de l'exécuteur de processus (processus réels, POSIX)
"""

import sys
import threading

import psutil
import pytest

from uem_agent.execution.models import ProcessStatus
from uem_agent.execution.process import ProcessExecutor, kill_process_tree


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="utilise /bin/sh")


def _is_gone(pid):
    """Processus disparu ou zombie en attente de récupération"""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def executor(agent_logger):
    return ProcessExecutor(agent_logger, wait_slice=0.05, kill_grace=2.0)


class TestProcessExecutor:

    def test_captures_stdout_and_exit_code(self, executor):
        result = executor.run('/bin/sh', ['-c', 'echo hello'])

        assert result.status == ProcessStatus.COMPLETED
        assert result.success
        assert result.exit_code == 0
        assert result.stdout == "hello\n"

    def test_empty_stderr_is_none(self, executor):
        result = executor.run('/bin/sh', ['-c', 'echo out'])
        assert result.stderr is None

    def test_stderr_and_non_zero_exit(self, executor):
        result = executor.run('/bin/sh', ['-c', 'echo oops >&2; exit 3'])

        assert result.status == ProcessStatus.COMPLETED
        assert not result.success
        assert result.exit_code == 3
        assert result.stderr == "oops\n"

    def test_script_written_to_stdin(self, executor):
        result = executor.run('/bin/sh', ['-s'], input_text="echo from-stdin\nexit 0\n")

        assert result.success
        assert result.stdout == "from-stdin\n"

    def test_environment_passed_to_process(self, executor):
        result = executor.run('/bin/sh', ['-c', 'echo "$UEM_PARAM_NAME"'], env={'UEM_PARAM_NAME': 'value'})
        assert result.stdout == "value\n"

    def test_missing_executable_is_a_failed_result(self, executor):
        result = executor.run('/nonexistent/interpreter', ['-c', 'true'])

        assert result.status == ProcessStatus.FAILED
        assert result.exit_code is None
        assert result.error.startswith("Failed to start process")
        assert not result.success

    def test_timeout_kills_process(self, executor):
        result = executor.run('/bin/sh', ['-c', 'sleep 30'], timeout=0.5)

        assert result.status == ProcessStatus.TIMEOUT
        assert result.exit_code == -1
        assert result.error == "Script execution timed out"
        assert result.duration_ms < 10000
        assert _is_gone(result.pid)

    def test_timeout_kills_whole_tree(self, executor):
        result = executor.run('/bin/sh', ['-c', 'sleep 30 & echo $!; wait'], timeout=0.5)

        assert result.status == ProcessStatus.TIMEOUT
        child_pid = int(result.stdout.split()[0])
        assert _is_gone(result.pid)
        assert _is_gone(child_pid)

    def test_cancellation_stops_process(self, executor):
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()

        result = executor.run('/bin/sh', ['-c', 'sleep 30'], timeout=60, cancel_event=cancel)

        assert result.status == ProcessStatus.CANCELLED
        assert result.exit_code == -1
        assert _is_gone(result.pid)

    def test_numeric_string_timeout_is_applied(self, executor):
        result = executor.run('/bin/sh', ['-c', 'sleep 30'], timeout="1")

        assert result.status == ProcessStatus.TIMEOUT
        assert result.duration_ms < 10000
        assert _is_gone(result.pid)

    def test_invalid_timeout_fails_without_spawning(self, executor):
        result = executor.run('/bin/sh', ['-c', 'echo never'], timeout="abc")

        assert result.status == ProcessStatus.FAILED
        assert result.pid is None
        assert result.stdout in (None, '')
        assert result.error == "Invalid timeout: 'abc'"

    def test_supervision_error_kills_tree_and_fails(self, executor, monkeypatch):
        def broken_wait(*args, **kwargs):
            raise RuntimeError("wait exploded")

        monkeypatch.setattr(executor, '_wait', broken_wait)

        result = executor.run('/bin/sh', ['-c', 'sleep 30'], timeout=60)

        assert result.status == ProcessStatus.FAILED
        assert result.exit_code == -1
        assert result.error == "Process supervision failed: wait exploded"
        assert _is_gone(result.pid)


def test_kill_process_tree_on_missing_pid():
    # PID très improbable
    assert kill_process_tree(2 ** 22 + 12345) is True
