"""
Types partagés par l'exécuteur de processus et le service de scripts
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ProcessStatus(Enum):
    """Issue d'un lancement de processus"""
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class ProcessResult:
    """
    Résultat d'un lancement de processus

    exit_code vaut -1 après un timeout ou une annulation, None si le
    processus n'a jamais démarré. stderr vide est représenté par None.
    """
    status: ProcessStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    pid: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == ProcessStatus.COMPLETED and self.exit_code == 0


@dataclass
class ScriptExecutionRequest:
    """Demande d'exécution d'un script, limitée à une invocation"""
    script_type: str
    script_content: str
    timeout_seconds: int = 300
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScriptExecutionResult:
    """Résultat normalisé d'une exécution de script"""
    success: bool
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: int = 0
