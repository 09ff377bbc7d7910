"""
Récupération des politiques en attente et remontée des résultats

Le passage périodique enchaîne :
1. Récupération des commandes en attente auprès du plan de contrôle,
   enregistrement local puis accusé de réception
2. Lancement de chaque commande en attente dans le pool de travail
3. Remontée des résultats finalisés non encore acceptés par le serveur

Un résultat n'est marqué remonté qu'après une réponse HTTP en succès ;
sinon il reste en base et sera renvoyé au passage suivant.
"""

import threading
from concurrent.futures import Executor, Future
from typing import Dict, Optional

from ..core.serialization import format_datetime, utcnow
from .models import PolicyExecutionCommand


RESULT_PATH = '/api/policy/execution/result'


class PolicyResultReporter:
    """
    Remonte les résultats d'exécution finalisés et les résultats de
    commandes génériques restés en attente d'envoi
    """

    def __init__(self, config, logger, client, store):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            client: Instance de ControlPlaneClient
            store: Instance de LocalStore
        """
        self.logger = logger.get_logger()
        self.client = client
        self.store = store

        policy_config = config.get_policy_config()
        self.max_attempts = policy_config['report_max_attempts']
        self.backoff_seconds = policy_config['report_backoff']

    def report_pending(self) -> int:
        """
        Envoie les résultats finalisés non remontés

        Returns:
            int: Nombre de résultats acceptés par le serveur
        """
        results = self.store.get_unreported_results(self.max_attempts, self.backoff_seconds)
        if not results:
            return 0

        self.logger.info(f"{len(results)} résultat(s) d'exécution à remonter")
        reported = 0

        for result in results:
            execution_id = result.get('executionId')
            payload = dict(result)
            payload['reportedAt'] = format_datetime(utcnow())

            self.store.record_report_attempt(execution_id)
            success, message = self.client.post_json(RESULT_PATH, payload, timeout=self.client.long_timeout)

            if success:
                self.store.mark_result_reported(execution_id)
                reported += 1
                self.logger.info(f"Résultat de l'exécution {execution_id} remonté")
            else:
                self.logger.warning(f"Échec de remontée du résultat {execution_id}: {message}")

        return reported

    def resend_command_results(self) -> int:
        """
        Renvoie les résultats de commandes dont le premier envoi a échoué

        Returns:
            int: Nombre de résultats acceptés
        """
        sent = 0
        for record in self.store.get_unsent_command_results(self.max_attempts):
            command_id = record.get('commandId')
            self.store.record_command_result_attempt(command_id)

            success, message = self.client.post_json(record['path'], record['body'])
            if success:
                self.store.mark_command_result_sent(command_id)
                sent += 1
            else:
                self.logger.warning(f"Renvoi du résultat de commande {command_id} échoué: {message}")
        return sent


class PolicyPoller:
    """
    Récupère les commandes de politique et les distribue au moteur
    """

    def __init__(self, config, logger, client, identity, store, engine, executor: Executor,
                 cancel_event: Optional[threading.Event] = None,
                 reporter: Optional[PolicyResultReporter] = None):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            client: Instance de ControlPlaneClient
            identity: Instance de AgentIdentity
            store: Instance de LocalStore
            engine: Instance de PolicyExecutionEngine
            executor: Pool de travail partagé
            cancel_event: Signal d'arrêt de l'agent transmis aux exécutions
            reporter: Remontée des résultats en fin de passage
        """
        self.config = config
        self.logger = logger.get_logger()
        self.client = client
        self.identity = identity
        self.store = store
        self.engine = engine
        self.executor = executor
        self.cancel_event = cancel_event or threading.Event()
        self.reporter = reporter

        self.active: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def run_cycle(self):
        """Passage complet : récupération, lancement, remontée"""
        self.poll_pending_commands()
        self.dispatch_pending_commands()
        if self.reporter is not None:
            self.reporter.report_pending()
            self.reporter.resend_command_results()

    def poll_pending_commands(self) -> int:
        """
        Récupère et enregistre les commandes en attente

        Returns:
            int: Nombre de nouvelles commandes enregistrées
        """
        if not self.identity.ensure_registered():
            self.logger.warning("Agent non enregistré, récupération des politiques ignorée")
            return 0

        agent_id = self.identity.agent_id
        status, data = self.client.get_json(f"/api/policy/agent/{agent_id}/pending-commands",
                                            timeout=self.client.long_timeout)

        if status == 404:
            return 0
        if not 200 <= status < 300:
            self.logger.warning(f"Impossible de récupérer les politiques en attente (HTTP {status})")
            return 0
        if not isinstance(data, list):
            self.logger.warning("Réponse des politiques en attente inattendue (liste attendue)")
            return 0

        if data:
            self.logger.info(f"{len(data)} commande(s) de politique en attente récupérée(s)")

        created = 0
        for item in data:
            try:
                command = PolicyExecutionCommand.from_dict(item)
            except (TypeError, ValueError, AttributeError) as e:
                self.logger.warning(f"Commande de politique ignorée: {e}")
                continue

            if self.store.store_pending_command(command.execution_id, command.to_dict()):
                created += 1
            self._acknowledge(agent_id, command.execution_id)

        return created

    def _acknowledge(self, agent_id: str, execution_id: str):
        success, message = self.client.post_json(
            f"/api/policy/agent/{agent_id}/commands/{execution_id}/acknowledge", {}
        )
        if success:
            self.logger.debug(f"Réception de la commande {execution_id} confirmée")
        else:
            self.logger.warning(f"Accusé de réception de {execution_id} échoué: {message}")

    def dispatch_pending_commands(self) -> int:
        """
        Lance chaque commande en attente dans sa propre exécution

        Returns:
            int: Nombre d'exécutions lancées
        """
        started = 0
        for command in self.store.get_pending_commands():
            if self.cancel_event.is_set():
                break

            execution_id = str(command.get('executionId', ''))
            if not self.store.mark_command_running(execution_id):
                continue

            future = self.executor.submit(self.engine.execute_stored_command, command, self.cancel_event)
            with self._lock:
                self.active[execution_id] = future
            future.add_done_callback(lambda _, key=execution_id: self._forget(key))
            started += 1

        if started:
            self.logger.info(f"{started} exécution(s) de politique lancée(s)")
        return started

    def _forget(self, execution_id: str):
        with self._lock:
            self.active.pop(execution_id, None)

    def active_executions(self) -> int:
        with self._lock:
            return len(self.active)
