"""
Service d'exécution de scripts multi-plateforme

Ce module traduit un type de script abstrait en invocation concrète :
- powershell : powershell.exe sous Windows, pwsh ailleurs s'il est installé
- bash : shell natif sous Unix, installations connues sous Windows
- cmd / batch : Windows uniquement
- python : premier interpréteur qui répond à --version
- shell : batch sous Windows, bash ailleurs
- wmi : requête WMI réécrite en commande PowerShell (Windows uniquement)

L'exécution est déléguée au ProcessExecutor, le résultat est normalisé
en ScriptExecutionResult.
"""

import os
import json
import time
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .interpreters import InterpreterLocator, get_interpreter_locator
from .models import ScriptExecutionRequest, ScriptExecutionResult
from .process import ProcessExecutor


PARAMETER_ENV_PREFIX = 'UEM_PARAM_'


@dataclass
class Invocation:
    """Invocation concrète d'un interpréteur"""
    executable: str
    args: List[str]
    input_text: Optional[str] = None
    temp_file: Optional[str] = None


Resolution = Tuple[Optional[Invocation], Optional[str]]


class ScriptExecutionService:
    """
    Service d'exécution de scripts pour les étapes de politique et les commandes
    """

    def __init__(self, logger, executor: Optional[ProcessExecutor] = None,
                 locator: Optional[InterpreterLocator] = None):
        """
        Args:
            logger: Instance de AgentLogger
            executor: Exécuteur de processus (créé si absent)
            locator: Stratégie de détection des interpréteurs (plateforme courante si absente)
        """
        self.logger = logger.get_logger()
        self.executor = executor or ProcessExecutor(logger)
        self.locator = locator or get_interpreter_locator()

        self._resolvers: Dict[str, Callable[[ScriptExecutionRequest], Resolution]] = {
            'powershell': self._resolve_powershell,
            'bash': self._resolve_bash,
            'cmd': self._resolve_batch,
            'batch': self._resolve_batch,
            'python': self._resolve_python,
            'shell': self._resolve_shell,
            'wmi': self._resolve_wmi,
        }

    def execute(self, request: ScriptExecutionRequest,
                cancel_event: Optional[threading.Event] = None) -> ScriptExecutionResult:
        """
        Exécute un script selon son type et la plateforme

        Args:
            request: Demande d'exécution
            cancel_event: Signal d'annulation coopérative

        Returns:
            ScriptExecutionResult: Résultat normalisé (jamais d'exception)
        """
        start = time.monotonic()
        script_type = (request.script_type or '').strip().lower()

        self.logger.info(f"Exécution d'un script {script_type or '?'} avec timeout {request.timeout_seconds}s")

        resolver = self._resolvers.get(script_type)
        if resolver is None:
            self.logger.warning(f"Type de script non supporté: {request.script_type}")
            return ScriptExecutionResult(
                success=False,
                error=f"Unsupported script type: {request.script_type}",
                elapsed_ms=self._elapsed_ms(start)
            )

        invocation = None
        try:
            invocation, error = resolver(request)
            if invocation is None:
                self.logger.warning(f"Script {script_type} non exécutable: {error}")
                return ScriptExecutionResult(success=False, error=error, elapsed_ms=self._elapsed_ms(start))

            process_result = self.executor.run(
                invocation.executable,
                invocation.args,
                input_text=invocation.input_text,
                timeout=request.timeout_seconds,
                cancel_event=cancel_event,
                env=self._build_environment(request.parameters)
            )
        except Exception as e:
            self.logger.exception(f"Erreur lors de l'exécution du script {script_type}")
            return ScriptExecutionResult(success=False, error=str(e), elapsed_ms=self._elapsed_ms(start))
        finally:
            if invocation is not None and invocation.temp_file:
                self._remove_quietly(invocation.temp_file)

        result = ScriptExecutionResult(
            success=process_result.success,
            exit_code=process_result.exit_code,
            output=process_result.stdout,
            error=process_result.error or process_result.stderr,
            elapsed_ms=self._elapsed_ms(start)
        )

        self.logger.info(
            f"Exécution terminée en {result.elapsed_ms}ms: succès={result.success}, code retour={result.exit_code}"
        )
        return result

    def get_supported_script_types(self) -> List[str]:
        """
        Liste les types de scripts utilisables sur cet hôte (diagnostic uniquement)

        Returns:
            list: Types de scripts disponibles
        """
        supported = ['shell']

        if self.locator.is_windows:
            supported.extend(['powershell', 'cmd', 'batch', 'wmi'])
            if self.locator.find_bash():
                supported.append('bash')
        else:
            if self.locator.find_bash():
                supported.append('bash')
            if self.locator.find_powershell():
                supported.append('powershell')

        if self.locator.find_python():
            supported.append('python')

        return supported

    # Résolution des invocations par type

    def _resolve_powershell(self, request: ScriptExecutionRequest) -> Resolution:
        executable = self.locator.find_powershell()
        if not executable:
            return None, "PowerShell is not available on this system"

        if self.locator.is_windows:
            args = ['-NoProfile', '-NonInteractive', '-ExecutionPolicy', 'Bypass', '-Command', '-']
        else:
            args = ['-NoProfile', '-NonInteractive', '-Command', '-']
        return Invocation(executable, args, input_text=request.script_content), None

    def _resolve_bash(self, request: ScriptExecutionRequest) -> Resolution:
        executable = self.locator.find_bash()
        if not executable:
            if self.locator.is_windows:
                return None, "Bash not available on this Windows system"
            return None, "Bash not available on this system"
        # -s : le script est lu sur l'entrée standard
        return Invocation(executable, ['-s'], input_text=request.script_content), None

    def _resolve_batch(self, request: ScriptExecutionRequest) -> Resolution:
        if not self.locator.is_windows:
            return None, "Batch scripts are only supported on Windows"

        # cmd.exe n'interprète correctement un script multi-lignes que depuis un fichier
        fd, path = tempfile.mkstemp(prefix='uem-', suffix='.bat')
        with os.fdopen(fd, 'w', encoding='utf-8', newline='\r\n') as f:
            f.write(request.script_content)
        return Invocation(self.locator.find_cmd() or 'cmd.exe', ['/d', '/c', path], temp_file=path), None

    def _resolve_python(self, request: ScriptExecutionRequest) -> Resolution:
        executable = self.locator.find_python()
        if not executable:
            return None, "Python interpreter not found"
        return Invocation(executable, ['-'], input_text=request.script_content), None

    def _resolve_shell(self, request: ScriptExecutionRequest) -> Resolution:
        if self.locator.is_windows:
            return self._resolve_batch(request)
        return self._resolve_bash(request)

    def _resolve_wmi(self, request: ScriptExecutionRequest) -> Resolution:
        if not self.locator.is_windows:
            return None, "WMI queries are only supported on Windows"

        query = request.script_content.replace('"', '`"')
        wmi_request = ScriptExecutionRequest(
            script_type='powershell',
            script_content=f'Get-WmiObject -Query "{query}" | ConvertTo-Json -Depth 10',
            timeout_seconds=request.timeout_seconds,
            parameters=request.parameters
        )
        return self._resolve_powershell(wmi_request)

    def _build_environment(self, parameters: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
        """
        Expose les paramètres de l'étape au script via des variables d'environnement

        Un paramètre "target_dir" devient UEM_PARAM_TARGET_DIR.
        """
        if not parameters:
            return None

        env = dict(os.environ)
        for name, value in parameters.items():
            key = PARAMETER_ENV_PREFIX + ''.join(c if c.isalnum() else '_' for c in str(name)).upper()
            if isinstance(value, (dict, list)):
                env[key] = json.dumps(value)
            elif isinstance(value, bool):
                env[key] = 'true' if value else 'false'
            else:
                env[key] = '' if value is None else str(value)
        return env

    @staticmethod
    def _remove_quietly(path: str):
        try:
            os.remove(path)
        except OSError:
            pass

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
