"""
Traitement des commandes poussées

- CommandHandler : exécute une commande et poste {commandId, status,
  output, durationMs} ; un envoi en échec est conservé pour être renvoyé
- LegacyInlineExecutor : ancien chemin qui exécute directement le payload
  comme un batch shell et poste {commandId, agentId, output}
- CommandDispatcher : consomme la file du canal et lance chaque commande
  dans sa propre exécution
"""

import sys
import time
import threading
from concurrent.futures import Executor
from typing import Any, Dict, Optional

from ..execution.models import ScriptExecutionRequest
from .channel import CommandChannel, CommandMessage


TRIGGER_DISCOVERY = 'trigger-discovery'
LEGACY_RESPONSE_PATH = '/api/commands/response'


class CommandHandler:
    """
    Exécute les commandes génériques et poste leur résultat
    """

    def __init__(self, config, logger, client, identity, store, script_service):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            client: Instance de ControlPlaneClient
            identity: Instance de AgentIdentity
            store: Instance de LocalStore
            script_service: Instance de ScriptExecutionService
        """
        self.logger = logger.get_logger()
        self.client = client
        self.identity = identity
        self.store = store
        self.script_service = script_service

        self.handlers = {
            'run-shell': self._run_shell,
            'run-script': self._run_script,
        }

    def handle(self, message: CommandMessage, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Traite une commande et poste son résultat

        Returns:
            dict: Corps de réponse posté
        """
        start = time.monotonic()
        try:
            handler = self.handlers.get(message.type)
            if handler is None:
                output: Any = {'message': f"unknown command type '{message.type}'"}
            else:
                output = handler(message.payload(), cancel_event)
            status = 'ok'
        except Exception as e:
            self.logger.exception(f"Erreur lors du traitement de la commande {message.id}")
            output = {'error': str(e)}
            status = 'error'

        body = {
            'commandId': message.id,
            'status': status,
            'output': output,
            'durationMs': int((time.monotonic() - start) * 1000),
        }
        self._post_result(message.id, body)
        return body

    def _run_shell(self, payload: Dict[str, Any], cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        command = payload.get('command') or ''
        if sys.platform == "win32":
            shell = payload.get('shell') or 'cmd.exe'
            args = ['/c', command]
        else:
            shell = payload.get('shell') or '/bin/bash'
            args = ['-lc', command]

        result = self.script_service.executor.run(
            shell, args,
            timeout=int(payload.get('timeoutSeconds') or 300),
            cancel_event=cancel_event
        )
        if result.exit_code is None:
            raise RuntimeError(result.error or f"Failed to start process: {shell}")

        return {'exitCode': result.exit_code, 'stdout': result.stdout, 'stderr': result.stderr or ''}

    def _run_script(self, payload: Dict[str, Any], cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        request = ScriptExecutionRequest(
            script_type=payload.get('scriptType') or '',
            script_content=payload.get('scriptContent') or '',
            timeout_seconds=int(payload.get('timeoutSeconds') or 300),
            parameters=payload.get('parameters') or {}
        )
        result = self.script_service.execute(request, cancel_event)
        return {
            'success': result.success,
            'exitCode': result.exit_code,
            'output': result.output,
            'error': result.error,
            'elapsedMs': result.elapsed_ms,
        }

    def _post_result(self, command_id: str, body: Dict[str, Any]):
        if not self.identity.ensure_registered():
            self.logger.warning(f"Agent non enregistré, résultat de la commande {command_id} conservé")
            self._keep(command_id, None, body)
            return

        path = f"/api/agents/{self.identity.agent_id}/responses"
        success, message = self.client.post_json(path, body)
        if success:
            self.logger.info(f"Résultat de la commande {command_id} envoyé ({body['status']})")
        else:
            self.logger.warning(f"Envoi du résultat de la commande {command_id} échoué: {message}")
            self._keep(command_id, path, body)

    def _keep(self, command_id: str, path: Optional[str], body: Dict[str, Any]):
        path = path or f"/api/agents/{self.identity.agent_id}/responses"
        self.store.store_command_result(command_id, {'commandId': command_id, 'path': path, 'body': body})


class LegacyInlineExecutor:
    """
    Ancien chemin d'exécution directe des commandes poussées

    Le payload est exécuté comme un batch shell dès réception et la sortie
    est postée sans passer par la file. Désactivé par défaut : une commande
    reçue serait sinon exécutée deux fois.
    """

    def __init__(self, logger, client, identity, script_service, executor: Executor,
                 cancel_event: Optional[threading.Event] = None):
        self.logger = logger.get_logger()
        self.client = client
        self.identity = identity
        self.script_service = script_service
        self.executor = executor
        self.cancel_event = cancel_event

    def __call__(self, message: CommandMessage):
        self.executor.submit(self.execute, message)

    def execute(self, message: CommandMessage) -> bool:
        payload = message.payload()
        script = payload.get('scriptContent') or payload.get('command') or ''
        if not script:
            self.logger.debug(f"Commande {message.id} sans script, chemin direct ignoré")
            return False

        result = self.script_service.execute(
            ScriptExecutionRequest(
                script_type='shell',
                script_content=script,
                timeout_seconds=int(payload.get('timeoutSeconds') or 300)
            ),
            self.cancel_event
        )
        output = result.output or ''
        if result.error:
            output = f"{output}{result.error}"

        success, msg = self.client.post_json(LEGACY_RESPONSE_PATH, {
            'commandId': message.id,
            'agentId': self.identity.agent_id,
            'output': output,
        })
        if not success:
            self.logger.warning(f"Réponse directe de la commande {message.id} échouée: {msg}")
        return success


class CommandDispatcher:
    """
    Consomme la file du canal et lance chaque commande dans le pool

    Une commande lente ne bloque jamais la réception des suivantes.
    """

    def __init__(self, logger, channel: CommandChannel, handler: CommandHandler, executor: Executor,
                 cancel_event: threading.Event, discovery=None):
        """
        Args:
            logger: Instance de AgentLogger
            channel: Canal de commandes (source de la file)
            handler: Traitement des commandes génériques
            executor: Pool de travail partagé
            cancel_event: Signal d'arrêt de l'agent
            discovery: DiscoveryOrchestrator pour la commande trigger-discovery
        """
        self.logger = logger.get_logger()
        self.channel = channel
        self.handler = handler
        self.executor = executor
        self.cancel_event = cancel_event
        self.discovery = discovery

        self.thread = None
        self.dispatched = 0
        self.expired = 0

    def start(self):
        self.thread = threading.Thread(target=self._consume_loop, name="CommandDispatcher", daemon=True)
        self.thread.start()

    def _consume_loop(self):
        self.logger.debug("Boucle de distribution des commandes démarrée")
        while not self.cancel_event.is_set():
            message = self.channel.get(timeout=1.0)
            if message is not None:
                self.dispatch(message)
        self.logger.debug("Boucle de distribution des commandes terminée")

    def dispatch(self, message: CommandMessage) -> bool:
        """
        Lance une commande dans sa propre exécution

        Returns:
            bool: False si la commande a expiré avant distribution
        """
        if message.is_expired():
            self.expired += 1
            self.logger.warning(f"Commande {message.id} expirée (ttl {message.ttl}s), ignorée")
            return False

        self.dispatched += 1
        self.executor.submit(self._run, message)
        return True

    def _run(self, message: CommandMessage):
        try:
            if message.type == TRIGGER_DISCOVERY:
                self.logger.info("Découverte déclenchée par commande")
                if self.discovery is None:
                    self.logger.warning("Découverte non disponible, commande ignorée")
                else:
                    self.discovery.trigger_discovery()
            else:
                self.handler.handle(message, self.cancel_event)
        except Exception:
            self.logger.exception(f"Erreur lors du traitement de la commande {message.id} ({message.type})")

    def join(self, timeout: float = 5.0):
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
