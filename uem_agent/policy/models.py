"""
Modèles des politiques multi-étapes

Les noms de champs sérialisés sont ceux attendus par le plan de contrôle
(camelCase, via core.serialization.to_wire).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.serialization import parse_datetime, to_wire, wire_get


# Statuts d'une exécution
STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'

# Statuts d'une étape
STEP_SUCCESS = 'success'
STEP_FAILED = 'failed'
STEP_CANCELLED = 'cancelled'

# Statuts finaux
FINAL_SUCCESS = 'success'
FINAL_PARTIAL = 'partial_success'
FINAL_FAILED = 'failed'

# Routage des étapes
ACTION_CONTINUE = 'continue'
ACTION_STOP = 'stop'
ACTION_RETRY = 'retry'


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class PolicyExecutionStep:
    step_number: int
    script_id: Any = None
    script_name: str = ''
    script_type: str = ''
    script_content: str = ''
    run_condition: str = 'always'
    on_success: str = ACTION_CONTINUE
    on_failure: str = ACTION_STOP
    timeout_seconds: int = 300
    max_retries: int = 0
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyExecutionStep':
        return cls(
            step_number=_int(wire_get(data, 'stepNumber'), 0),
            script_id=wire_get(data, 'scriptId'),
            script_name=wire_get(data, 'scriptName') or '',
            script_type=wire_get(data, 'scriptType') or '',
            script_content=wire_get(data, 'scriptContent') or '',
            run_condition=wire_get(data, 'runCondition') or 'always',
            on_success=(wire_get(data, 'onSuccess') or ACTION_CONTINUE).lower(),
            on_failure=(wire_get(data, 'onFailure') or ACTION_STOP).lower(),
            timeout_seconds=_int(wire_get(data, 'timeoutSeconds'), 300),
            max_retries=max(0, _int(wire_get(data, 'maxRetries'), 0)),
            parameters=wire_get(data, 'parameters') or {}
        )


@dataclass
class PolicyExecutionCommand:
    """
    Commande d'exécution de politique reçue du plan de contrôle

    Immuable une fois enregistrée localement.
    """
    execution_id: str
    agent_id: str = ''
    policy_id: Any = None
    policy_name: str = ''
    execution_steps: List[PolicyExecutionStep] = field(default_factory=list)
    timeout_seconds: int = 1800
    trigger_type: str = 'manual'
    triggered_by: Any = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyExecutionCommand':
        execution_id = wire_get(data, 'executionId')
        if not execution_id:
            raise ValueError("Commande de politique sans executionId")

        return cls(
            execution_id=str(execution_id),
            agent_id=wire_get(data, 'agentId') or '',
            policy_id=wire_get(data, 'policyId'),
            policy_name=wire_get(data, 'policyName') or '',
            execution_steps=[
                PolicyExecutionStep.from_dict(step) for step in (wire_get(data, 'executionSteps') or [])
            ],
            timeout_seconds=_int(wire_get(data, 'timeoutSeconds'), 1800),
            trigger_type=wire_get(data, 'triggerType') or 'manual',
            triggered_by=wire_get(data, 'triggeredBy'),
            issued_at=parse_datetime(wire_get(data, 'issuedAt')),
            expires_at=parse_datetime(wire_get(data, 'expiresAt')),
            metadata=wire_get(data, 'metadata')
        )

    def ordered_steps(self) -> List[PolicyExecutionStep]:
        return sorted(self.execution_steps, key=lambda step: step.step_number)

    def to_dict(self) -> Dict[str, Any]:
        return to_wire(self)


@dataclass
class PolicyStepResult:
    """Résultat d'une étape, jamais retiré de la liste de l'exécution"""
    step_number: int
    script_id: Any = None
    script_name: str = ''
    status: str = ''
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    execution_time_ms: int = 0
    timestamp: Optional[datetime] = None
    retry_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == STEP_SUCCESS


@dataclass
class PolicyExecutionResult:
    """
    Résultat d'une exécution de politique

    Créé au démarrage, mis à jour après chaque étape et finalisé une seule
    fois. Idempotent par execution_id côté stockage et côté serveur.
    """
    execution_id: str
    agent_id: str = ''
    policy_id: Any = None
    status: str = STATUS_RUNNING
    progress: float = 0.0
    total_steps: int = 0
    completed_steps: int = 0
    current_step: int = 1
    step_results: List[PolicyStepResult] = field(default_factory=list)
    final_output: Optional[str] = None
    final_status: Optional[str] = None
    error_summary: Optional[str] = None
    total_execution_time_ms: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    agent_version: Optional[str] = None
    operating_system: Optional[str] = None
    os_version: Optional[str] = None
    retry_count: int = 0
    reported_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyExecutionResult':
        """Reconstruit un résultat persisté (reprise après redémarrage)"""
        steps = []
        for item in wire_get(data, 'stepResults') or []:
            steps.append(PolicyStepResult(
                step_number=_int(wire_get(item, 'stepNumber'), 0),
                script_id=wire_get(item, 'scriptId'),
                script_name=wire_get(item, 'scriptName') or '',
                status=wire_get(item, 'status') or '',
                exit_code=wire_get(item, 'exitCode'),
                output=wire_get(item, 'output'),
                error_message=wire_get(item, 'errorMessage'),
                execution_time_ms=_int(wire_get(item, 'executionTimeMs'), 0),
                timestamp=parse_datetime(wire_get(item, 'timestamp')),
                retry_count=_int(wire_get(item, 'retryCount'), 0)
            ))

        return cls(
            execution_id=str(wire_get(data, 'executionId')),
            agent_id=wire_get(data, 'agentId') or '',
            policy_id=wire_get(data, 'policyId'),
            status=wire_get(data, 'status') or STATUS_RUNNING,
            progress=float(wire_get(data, 'progress') or 0.0),
            total_steps=_int(wire_get(data, 'totalSteps'), 0),
            completed_steps=_int(wire_get(data, 'completedSteps'), 0),
            current_step=_int(wire_get(data, 'currentStep'), 1),
            step_results=steps,
            final_output=wire_get(data, 'finalOutput'),
            final_status=wire_get(data, 'finalStatus'),
            error_summary=wire_get(data, 'errorSummary'),
            total_execution_time_ms=_int(wire_get(data, 'totalExecutionTimeMs'), 0),
            started_at=parse_datetime(wire_get(data, 'startedAt')),
            completed_at=parse_datetime(wire_get(data, 'completedAt')),
            agent_version=wire_get(data, 'agentVersion'),
            operating_system=wire_get(data, 'operatingSystem'),
            os_version=wire_get(data, 'osVersion'),
            retry_count=_int(wire_get(data, 'retryCount'), 0),
            reported_at=parse_datetime(wire_get(data, 'reportedAt'))
        )

    def to_dict(self) -> Dict[str, Any]:
        return to_wire(self)
