"""
Moteur d'exécution des politiques multi-étapes

Ce module exécute les étapes d'une politique dans l'ordre strict des
numéros d'étape :
- Routage succès / échec (continue, stop, retry avec délai linéaire)
- Progression persistée après chaque étape
- Budget de temps global de la politique
- Finalisation unique (success, partial_success, failed)
- Reprise des exécutions interrompues par un redémarrage
"""

import time
import platform
import threading
from typing import Any, Dict, Optional

from .. import __version__
from ..core.serialization import utcnow
from ..execution.models import ScriptExecutionRequest
from .models import (
    ACTION_RETRY, ACTION_STOP, FINAL_FAILED, FINAL_PARTIAL, FINAL_SUCCESS,
    STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING, STEP_CANCELLED, STEP_FAILED, STEP_SUCCESS,
    PolicyExecutionCommand, PolicyExecutionResult, PolicyExecutionStep, PolicyStepResult
)


RESTART_ERROR = "Agent restarted during execution"
CANCELLED_ERROR = "Execution was cancelled"


class PolicyExecutionEngine:
    """
    Exécute une politique et persiste son résultat

    L'état d'une exécution est privé à l'appel de execute_policy : plusieurs
    politiques peuvent tourner en parallèle dans le pool sans verrou commun.
    """

    def __init__(self, config, logger, store, script_service, agent_version: str = __version__):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            store: Instance de LocalStore
            script_service: Instance de ScriptExecutionService
            agent_version: Version rapportée dans les résultats
        """
        self.config = config
        self.logger = logger.get_logger()
        self.store = store
        self.script_service = script_service
        self.agent_version = agent_version

        policy_config = config.get_policy_config()
        self.retry_backoff_unit = policy_config['retry_backoff_unit']
        self.retry_backoff_cap = policy_config['retry_backoff_cap']

    def retry_delay(self, attempt: int) -> float:
        """Délai avant la tentative n : unit x n, plafonné"""
        return min(self.retry_backoff_unit * attempt, self.retry_backoff_cap)

    def execute_stored_command(self, command_data: Dict[str, Any],
                               cancel_event: Optional[threading.Event] = None) -> Optional[PolicyExecutionResult]:
        """
        Exécute une commande telle que lue dans le stockage local

        Une commande illisible ou une erreur de préparation produit un
        résultat terminal en échec au lieu d'une exception.
        """
        execution_id = str(command_data.get('executionId', ''))
        try:
            command = PolicyExecutionCommand.from_dict(command_data)
        except (TypeError, ValueError, AttributeError) as e:
            self.logger.error(f"Commande de politique {execution_id} invalide: {e}")
            self.record_execution_failure(execution_id, command_data, f"Invalid policy command: {e}")
            return None

        try:
            return self.execute_policy(command, cancel_event)
        except Exception as e:
            self.logger.exception(f"Erreur lors de l'exécution de la politique {execution_id}")
            self.record_execution_failure(execution_id, command_data, str(e))
            return None

    def execute_policy(self, command: PolicyExecutionCommand,
                       cancel_event: Optional[threading.Event] = None) -> PolicyExecutionResult:
        """
        Exécute toutes les étapes d'une politique

        Args:
            command: Commande de politique
            cancel_event: Signal d'annulation coopérative

        Returns:
            PolicyExecutionResult: Résultat finalisé et persisté
        """
        cancel_event = cancel_event or threading.Event()
        steps = command.ordered_steps()

        self.logger.info(
            f"Démarrage de la politique {command.policy_id} ({command.policy_name}) - "
            f"exécution {command.execution_id}, {len(steps)} étape(s)"
        )

        result = PolicyExecutionResult(
            execution_id=command.execution_id,
            agent_id=command.agent_id,
            policy_id=command.policy_id,
            status=STATUS_RUNNING,
            total_steps=len(steps),
            started_at=utcnow(),
            agent_version=self.agent_version,
            operating_system=platform.system(),
            os_version=platform.platform()
        )
        self._persist(result)

        start = time.monotonic()
        deadline = start + command.timeout_seconds if command.timeout_seconds and command.timeout_seconds > 0 else None
        overall_success = True
        interruption = None

        for step in steps:
            if cancel_event.is_set():
                interruption = CANCELLED_ERROR
                break

            step_timeout = step.timeout_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    interruption = f"Policy execution timed out after {command.timeout_seconds}s"
                    self.logger.warning(f"Exécution {command.execution_id}: budget de temps épuisé avant l'étape {step.step_number}")
                    break
                step_timeout = max(1, min(step_timeout, int(remaining))) if step_timeout > 0 else max(1, int(remaining))

            result.current_step = step.step_number
            step_result = self._execute_step(step, step_timeout, cancel_event)
            stop = False

            if step_result.succeeded:
                if step.on_success == ACTION_STOP:
                    self.logger.info(f"Étape {step.step_number} réussie avec condition d'arrêt")
                    stop = True

            elif step_result.status == STEP_CANCELLED:
                overall_success = False
                interruption = CANCELLED_ERROR
                stop = True

            elif step.on_failure == ACTION_STOP:
                overall_success = False
                self.logger.warning(f"Étape {step.step_number} en échec avec condition d'arrêt")
                stop = True

            elif step.on_failure == ACTION_RETRY and step.max_retries > 0:
                step_result = self._retry_step(step, step_result, step_timeout, cancel_event)
                if not step_result.succeeded:
                    overall_success = False
                if step_result.status == STEP_CANCELLED:
                    interruption = CANCELLED_ERROR
                    stop = True

            else:
                # Toute autre valeur de onFailure continue vers l'étape suivante
                overall_success = False

            if step_result.succeeded:
                result.completed_steps += 1
                if step_result.retry_count:
                    result.retry_count += step_result.retry_count
            result.step_results.append(step_result)
            result.progress = self._progress(result)
            self._persist(result)

            if stop:
                break

        self._finalize(result, overall_success, interruption, start)
        self._persist(result)
        self.store.mark_command_completed(command.execution_id)

        self.logger.info(
            f"Politique terminée: {command.execution_id}, statut final {result.final_status}, "
            f"étapes {result.completed_steps}/{result.total_steps}"
        )
        return result

    def _execute_step(self, step: PolicyExecutionStep, timeout_seconds: int,
                      cancel_event: threading.Event) -> PolicyStepResult:
        """Exécute une étape via le service de scripts"""
        if step.run_condition and step.run_condition.lower() != 'always':
            self.logger.debug(f"Condition '{step.run_condition}' de l'étape {step.step_number} non évaluée")

        self.logger.info(f"Exécution de l'étape {step.step_number}: {step.script_name} ({step.script_type})")

        start = time.monotonic()
        step_result = PolicyStepResult(
            step_number=step.step_number,
            script_id=step.script_id,
            script_name=step.script_name,
            timestamp=utcnow()
        )

        try:
            execution = self.script_service.execute(
                ScriptExecutionRequest(
                    script_type=step.script_type,
                    script_content=step.script_content,
                    timeout_seconds=timeout_seconds,
                    parameters=step.parameters or {}
                ),
                cancel_event
            )
        except Exception as e:
            self.logger.exception(f"Échec de l'exécution de l'étape {step.step_number}")
            step_result.status = STEP_FAILED
            step_result.error_message = str(e)
            step_result.execution_time_ms = int((time.monotonic() - start) * 1000)
            return step_result

        if execution.success:
            step_result.status = STEP_SUCCESS
        elif cancel_event.is_set():
            step_result.status = STEP_CANCELLED
        else:
            step_result.status = STEP_FAILED
        step_result.exit_code = execution.exit_code
        step_result.output = execution.output
        step_result.error_message = execution.error
        step_result.execution_time_ms = int((time.monotonic() - start) * 1000)

        self.logger.info(
            f"Étape {step.step_number} terminée: statut {step_result.status}, code retour {step_result.exit_code}"
        )
        return step_result

    def _retry_step(self, step: PolicyExecutionStep, failed: PolicyStepResult, timeout_seconds: int,
                    cancel_event: threading.Event) -> PolicyStepResult:
        """
        Relance une étape en échec jusqu'à max_retries fois

        Returns:
            PolicyStepResult: Résultat de la dernière tentative, retry_count renseigné
        """
        last = failed
        for attempt in range(1, step.max_retries + 1):
            delay = self.retry_delay(attempt)
            self.logger.info(
                f"Nouvelle tentative de l'étape {step.step_number} ({attempt}/{step.max_retries}) dans {delay}s"
            )
            if delay > 0 and cancel_event.wait(delay):
                # Le résultat de la tentative précédente reste inchangé
                return PolicyStepResult(
                    step_number=step.step_number,
                    script_id=step.script_id,
                    script_name=step.script_name,
                    status=STEP_CANCELLED,
                    exit_code=-1,
                    error_message=CANCELLED_ERROR,
                    timestamp=utcnow(),
                    retry_count=attempt - 1
                )

            last = self._execute_step(step, timeout_seconds, cancel_event)
            last.retry_count = attempt
            if last.succeeded or last.status == STEP_CANCELLED:
                break
        return last

    def _progress(self, result: PolicyExecutionResult) -> float:
        if result.total_steps <= 0:
            return 0.0
        return round(result.completed_steps / result.total_steps * 100, 2)

    def _finalize(self, result: PolicyExecutionResult, overall_success: bool,
                  interruption: Optional[str], start: float):
        result.status = STATUS_COMPLETED
        result.progress = 100.0
        result.completed_at = utcnow()
        result.total_execution_time_ms = int((time.monotonic() - start) * 1000)

        if overall_success and interruption is None and result.completed_steps == result.total_steps:
            result.final_status = FINAL_SUCCESS
            result.final_output = "All steps completed successfully"
        elif result.completed_steps > 0:
            result.final_status = FINAL_PARTIAL
            result.final_output = f"Completed {result.completed_steps} of {result.total_steps} steps"
        else:
            result.final_status = FINAL_FAILED
            result.final_output = "No steps completed successfully"

        errors = [
            f"Step {step.step_number}: {step.error_message or f'exit code {step.exit_code}'}"
            for step in result.step_results
            if not step.succeeded
        ]
        if interruption:
            errors.append(interruption)
        result.error_summary = '; '.join(errors) or None

    def _persist(self, result: PolicyExecutionResult):
        self.store.store_execution_result(result.execution_id, result.to_dict())

    def record_execution_failure(self, execution_id: str, command_data: Optional[Dict[str, Any]],
                                 error_message: str) -> PolicyExecutionResult:
        """
        Enregistre un résultat terminal en échec et clôt la commande

        Utilisé quand l'exécution n'a pas pu être préparée ou a levé une
        exception en dehors des étapes.
        """
        command_data = command_data or {}
        now = utcnow()
        result = PolicyExecutionResult(
            execution_id=execution_id,
            agent_id=command_data.get('agentId', '') or '',
            policy_id=command_data.get('policyId'),
            status=STATUS_FAILED,
            final_status=FINAL_FAILED,
            final_output="No steps completed successfully",
            error_summary=error_message,
            total_steps=len(command_data.get('executionSteps') or []),
            started_at=now,
            completed_at=now,
            agent_version=self.agent_version,
            operating_system=platform.system(),
            os_version=platform.platform()
        )
        self._persist(result)
        self.store.mark_command_completed(execution_id)
        self.store.record_audit_event('policy_execution_failed', execution_id, {'error': error_message})
        return result

    def recover_interrupted_commands(self) -> int:
        """
        Clôt les exécutions restées "running" après un arrêt brutal

        Elles ne sont jamais relancées : le dernier état persisté est
        finalisé en échec et remonté au prochain passage du reporter.

        Returns:
            int: Nombre d'exécutions récupérées
        """
        recovered = 0
        for command_data in self.store.get_commands_by_status('running'):
            execution_id = str(command_data.get('executionId', ''))
            persisted = self.store.get_execution_result(execution_id)

            if persisted is None:
                self.record_execution_failure(execution_id, command_data, RESTART_ERROR)
            else:
                result = PolicyExecutionResult.from_dict(persisted)
                result.status = STATUS_FAILED
                result.final_status = FINAL_FAILED
                result.final_output = f"Completed {result.completed_steps} of {result.total_steps} steps before restart"
                result.error_summary = RESTART_ERROR
                result.completed_at = utcnow()
                self._persist(result)
                self.store.mark_command_completed(execution_id)
                self.store.record_audit_event('policy_execution_recovered', execution_id,
                                              {'completedSteps': result.completed_steps})

            self.logger.warning(f"Exécution {execution_id} interrompue par un redémarrage, clôturée en échec")
            recovered += 1

        return recovered
