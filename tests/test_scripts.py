"""
Tests du service d'exécution de scripts

Les interpréteurs sont simulés par un localisateur factice : aucun
processus n'est lancé, sauf dans la classe TestRealShell.
"""

import os
import sys

import pytest

from conftest import FakeProcessExecutor
from uem_agent.execution.interpreters import (
    InterpreterLocator, UnixInterpreterLocator, WindowsInterpreterLocator, get_interpreter_locator
)
from uem_agent.execution.models import ProcessResult, ProcessStatus, ScriptExecutionRequest
from uem_agent.execution.scripts import PARAMETER_ENV_PREFIX, ScriptExecutionService


class FakeLocator(InterpreterLocator):

    def __init__(self, windows=False, bash='/bin/bash', powershell=None, python='/usr/bin/python3'):
        super().__init__(which=lambda name: None, exists=lambda path: False)
        self.windows = windows
        self.bash = bash
        self.powershell = powershell
        self.python = python

    @property
    def is_windows(self):
        return self.windows

    def find_powershell(self):
        return self.powershell

    def find_bash(self):
        return self.bash

    def find_cmd(self):
        return 'cmd.exe' if self.windows else None

    def find_python(self):
        return self.python


def make_service(agent_logger, **locator_kwargs):
    executor = FakeProcessExecutor()
    return ScriptExecutionService(agent_logger, executor=executor, locator=FakeLocator(**locator_kwargs)), executor


class TestScriptResolution:

    def test_unsupported_type_spawns_nothing(self, agent_logger):
        service, executor = make_service(agent_logger)

        result = service.execute(ScriptExecutionRequest('unsupported-lang', 'print(1)'))

        assert result.success is False
        assert "Unsupported script type" in result.error
        assert executor.calls == []

    def test_script_type_is_case_insensitive(self, agent_logger):
        service, executor = make_service(agent_logger)
        service.execute(ScriptExecutionRequest('BASH', 'echo hi'))
        assert executor.calls[0]['executable'] == '/bin/bash'

    def test_bash_reads_script_from_stdin(self, agent_logger):
        service, executor = make_service(agent_logger)

        result = service.execute(ScriptExecutionRequest('bash', 'echo hi', timeout_seconds=12))

        assert result.success
        assert result.output == "ok\n"
        call = executor.calls[0]
        assert call['args'] == ['-s']
        assert call['input_text'] == 'echo hi'
        assert call['timeout'] == 12

    def test_missing_bash_is_reported(self, agent_logger):
        service, executor = make_service(agent_logger, bash=None)

        result = service.execute(ScriptExecutionRequest('bash', 'echo hi'))

        assert result.success is False
        assert result.error == "Bash not available on this system"
        assert executor.calls == []

    def test_batch_rejected_outside_windows(self, agent_logger):
        service, executor = make_service(agent_logger)

        result = service.execute(ScriptExecutionRequest('batch', 'echo hi'))

        assert result.error == "Batch scripts are only supported on Windows"
        assert executor.calls == []

    def test_batch_on_windows_uses_temp_file_removed_afterwards(self, agent_logger):
        service, executor = make_service(agent_logger, windows=True)

        service.execute(ScriptExecutionRequest('cmd', 'echo one\necho two'))

        call = executor.calls[0]
        assert call['executable'] == 'cmd.exe'
        assert call['args'][:2] == ['/d', '/c']
        assert call['args'][2].endswith('.bat')
        assert not os.path.exists(call['args'][2])

    def test_shell_maps_to_bash_outside_windows(self, agent_logger):
        service, executor = make_service(agent_logger)
        service.execute(ScriptExecutionRequest('shell', 'echo hi'))
        assert executor.calls[0]['executable'] == '/bin/bash'

    def test_powershell_unavailable(self, agent_logger):
        service, executor = make_service(agent_logger, powershell=None)

        result = service.execute(ScriptExecutionRequest('powershell', 'Get-Date'))

        assert result.error == "PowerShell is not available on this system"
        assert executor.calls == []

    def test_powershell_on_windows_bypasses_execution_policy(self, agent_logger):
        service, executor = make_service(agent_logger, windows=True, powershell='powershell.exe')

        service.execute(ScriptExecutionRequest('powershell', 'Get-Date'))

        args = executor.calls[0]['args']
        assert '-ExecutionPolicy' in args and 'Bypass' in args
        assert executor.calls[0]['input_text'] == 'Get-Date'

    def test_wmi_rewritten_to_powershell_on_windows(self, agent_logger):
        service, executor = make_service(agent_logger, windows=True, powershell='powershell.exe')

        service.execute(ScriptExecutionRequest('wmi', 'SELECT * FROM Win32_OperatingSystem'))

        assert 'Get-WmiObject -Query "SELECT * FROM Win32_OperatingSystem"' in executor.calls[0]['input_text']

    def test_wmi_rejected_outside_windows(self, agent_logger):
        service, _ = make_service(agent_logger)
        result = service.execute(ScriptExecutionRequest('wmi', 'SELECT * FROM Win32_Bios'))
        assert result.error == "WMI queries are only supported on Windows"

    def test_python_not_found(self, agent_logger):
        service, _ = make_service(agent_logger, python=None)
        result = service.execute(ScriptExecutionRequest('python', 'print(1)'))
        assert result.error == "Python interpreter not found"

    def test_parameters_exposed_as_environment(self, agent_logger):
        service, executor = make_service(agent_logger)

        service.execute(ScriptExecutionRequest(
            'bash', 'echo', parameters={'target-dir': '/opt', 'force': True, 'items': [1, 2]}
        ))

        env = executor.calls[0]['env']
        assert env[PARAMETER_ENV_PREFIX + 'TARGET_DIR'] == '/opt'
        assert env[PARAMETER_ENV_PREFIX + 'FORCE'] == 'true'
        assert env[PARAMETER_ENV_PREFIX + 'ITEMS'] == '[1, 2]'

    def test_no_parameters_inherits_environment(self, agent_logger):
        service, executor = make_service(agent_logger)
        service.execute(ScriptExecutionRequest('bash', 'echo'))
        assert executor.calls[0]['env'] is None

    def test_timeout_result_is_normalized(self, agent_logger):
        service, executor = make_service(agent_logger)
        executor.result = ProcessResult(status=ProcessStatus.TIMEOUT, exit_code=-1,
                                        error="Script execution timed out")

        result = service.execute(ScriptExecutionRequest('bash', 'sleep 100', timeout_seconds=1))

        assert result.success is False
        assert result.exit_code == -1
        assert result.error == "Script execution timed out"

    def test_supported_types_depend_on_platform(self, agent_logger):
        unix, _ = make_service(agent_logger, powershell=None)
        windows, _ = make_service(agent_logger, windows=True, bash=None, powershell='powershell.exe')

        assert 'bash' in unix.get_supported_script_types()
        assert 'cmd' not in unix.get_supported_script_types()
        assert {'powershell', 'cmd', 'batch', 'wmi'} <= set(windows.get_supported_script_types())
        assert 'bash' not in windows.get_supported_script_types()


class TestInterpreterLocators:

    def test_platform_selection(self):
        assert isinstance(get_interpreter_locator('win32'), WindowsInterpreterLocator)
        assert isinstance(get_interpreter_locator('linux'), UnixInterpreterLocator)

    def test_windows_bash_checks_known_paths(self):
        locator = WindowsInterpreterLocator(which=lambda name: None,
                                            exists=lambda path: path.endswith(r"Git\bin\bash.exe"))
        assert locator.find_bash() == r"C:\Program Files\Git\bin\bash.exe"

    def test_unix_pwsh_from_path(self):
        locator = UnixInterpreterLocator(which=lambda name: '/snap/bin/pwsh' if name == 'pwsh' else None,
                                         exists=lambda path: False)
        assert locator.find_powershell() == '/snap/bin/pwsh'

    def test_python_detection_is_cached(self):
        attempts = []

        class CountingLocator(UnixInterpreterLocator):
            def _verify(self, executable, *args):
                attempts.append(executable)
                return True

        locator = CountingLocator(which=lambda name: f'/usr/bin/{name}', exists=lambda path: False)

        assert locator.find_python() == '/usr/bin/python3'
        assert locator.find_python() == '/usr/bin/python3'
        assert attempts == ['/usr/bin/python3']


@pytest.mark.skipif(sys.platform == "win32" or not os.path.exists('/bin/bash'), reason="bash requis")
class TestRealShell:

    def test_bash_script_runs(self, agent_logger):
        service = ScriptExecutionService(agent_logger)

        result = service.execute(ScriptExecutionRequest('bash', 'echo "hello $UEM_PARAM_WHO"',
                                                        parameters={'who': 'agent'}))

        assert result.success
        assert result.output.strip() == "hello agent"
