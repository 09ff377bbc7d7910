"""
Exécuteur de processus pour l'agent

Ce module lance un interpréteur ou un shell et gère son cycle de vie :
- Écriture optionnelle du script sur l'entrée standard
- Capture incrémentale de stdout/stderr
- Timeout et annulation coopérative
- Arrêt forcé de l'arbre de processus complet (pas d'orphelins)

Aucune exception ne sort de cette frontière : tout échec est converti
en ProcessResult.
"""

import os
import sys
import time
import signal
import threading
import subprocess
from typing import Dict, List, Optional, Union

import psutil

from .models import ProcessResult, ProcessStatus


def kill_process_tree(pid: int, include_parent: bool = True, timeout: float = 5.0, logger=None) -> bool:
    """
    Tue un processus et tous ses descendants

    Args:
        pid: PID du processus racine
        include_parent: Tue aussi le processus racine
        timeout: Délai d'attente de la disparition des processus
        logger: Logger optionnel pour signaler les refus d'accès

    Returns:
        bool: True si plus aucun processus de l'arbre n'est vivant
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return True

    targets = children + ([parent] if include_parent else [])
    for proc in targets:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            if logger:
                logger.warning(f"Accès refusé pour tuer le processus {proc.pid}")

    _, alive = psutil.wait_procs(targets, timeout=timeout)
    return not alive


class ProcessExecutor:
    """
    Lance un processus enfant et attend sa fin, son timeout ou son annulation
    """

    _STOP_REASONS = {
        ProcessStatus.TIMEOUT: 'expiré',
        ProcessStatus.CANCELLED: 'annulé',
    }

    def __init__(self, logger, wait_slice: float = 0.2, kill_grace: float = 5.0):
        """
        Args:
            logger: Instance de AgentLogger
            wait_slice: Granularité de vérification de l'annulation (secondes)
            kill_grace: Délai accordé aux lecteurs et à l'arrêt forcé (secondes)
        """
        self.logger = logger.get_logger()
        self.wait_slice = wait_slice
        self.kill_grace = kill_grace

    def run(self,
            executable: str,
            args: Optional[List[str]] = None,
            input_text: Optional[str] = None,
            timeout: Optional[Union[float, int, str]] = 300,
            cancel_event: Optional[threading.Event] = None,
            env: Optional[Dict[str, str]] = None) -> ProcessResult:
        """
        Exécute un processus jusqu'à sa fin

        Args:
            executable: Chemin ou nom de l'exécutable
            args: Arguments de ligne de commande
            input_text: Texte écrit sur stdin puis stdin fermé (None = pas d'entrée)
            timeout: Timeout en secondes, nombre ou chaîne numérique (None ou <= 0 = illimité)
            cancel_event: Signal d'annulation coopérative
            env: Environnement du processus (hérité si None)

        Returns:
            ProcessResult: Résultat structuré, jamais d'exception
        """
        start = time.monotonic()
        argv = [executable] + list(args or [])

        try:
            timeout = self._normalize_timeout(timeout)
        except (TypeError, ValueError):
            self.logger.error(f"Timeout invalide pour {executable}: {timeout!r}")
            return ProcessResult(
                status=ProcessStatus.FAILED,
                error=f"Invalid timeout: {timeout!r}",
                duration_ms=self._elapsed_ms(start)
            )

        self.logger.debug(f"Démarrage du processus: {argv}")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                **self._platform_popen_kwargs()
            )
        except (OSError, ValueError) as e:
            self.logger.error(f"Impossible de démarrer le processus {executable}: {e}")
            return ProcessResult(
                status=ProcessStatus.FAILED,
                error=f"Failed to start process: {executable} ({e})",
                duration_ms=self._elapsed_ms(start)
            )

        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        threads = []
        status = ProcessStatus.FAILED
        supervision_error = None

        try:
            threads.append(self._start_reader(process.stdout, stdout_chunks, 'stdout'))
            threads.append(self._start_reader(process.stderr, stderr_chunks, 'stderr'))
            if input_text is not None:
                threads.append(self._start_writer(process, input_text))
            status = self._wait(process, start, timeout, cancel_event)
        except Exception as e:
            supervision_error = e
            self.logger.exception(f"Erreur de supervision du processus {process.pid}: {e}")
        finally:
            if status != ProcessStatus.COMPLETED:
                self.logger.warning(
                    f"Processus {process.pid} {self._STOP_REASONS.get(status, 'en échec')}, "
                    "arrêt de l'arbre de processus"
                )
                self._terminate_tree(process)

        for thread in threads:
            thread.join(timeout=self.kill_grace)

        stdout = ''.join(stdout_chunks)
        stderr = ''.join(stderr_chunks)
        duration_ms = self._elapsed_ms(start)

        if supervision_error is not None:
            return ProcessResult(status=ProcessStatus.FAILED, exit_code=-1, stdout=stdout, stderr=stderr or None,
                                 error=f"Process supervision failed: {supervision_error}",
                                 duration_ms=duration_ms, pid=process.pid)
        if status == ProcessStatus.TIMEOUT:
            return ProcessResult(status=status, exit_code=-1, stdout=stdout, stderr=stderr or None,
                                 error="Script execution timed out", duration_ms=duration_ms, pid=process.pid)
        if status == ProcessStatus.CANCELLED:
            return ProcessResult(status=status, exit_code=-1, stdout=stdout, stderr=stderr or None,
                                 error="Script execution was cancelled", duration_ms=duration_ms, pid=process.pid)

        return ProcessResult(
            status=ProcessStatus.COMPLETED,
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr or None,
            duration_ms=duration_ms,
            pid=process.pid
        )

    @staticmethod
    def _normalize_timeout(timeout: Optional[Union[float, int, str]]) -> Optional[float]:
        """Convertit le timeout en secondes (None = illimité), lève ValueError si invalide"""
        if timeout is None:
            return None
        value = float(timeout)
        if value != value:
            raise ValueError("NaN")
        return value if value > 0 else None

    def _platform_popen_kwargs(self) -> Dict[str, object]:
        """
        Options de création propres à la plateforme

        Le processus est isolé dans son propre groupe pour pouvoir tuer
        l'arbre entier, y compris les descendants rattachés à init.
        """
        if sys.platform == "win32":
            return {'creationflags': subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP}
        return {'start_new_session': True}

    def _wait(self, process: subprocess.Popen, start: float, timeout: Optional[float],
              cancel_event: Optional[threading.Event]) -> ProcessStatus:
        """Attend la fin du processus en surveillant timeout et annulation"""
        deadline = start + timeout if timeout and timeout > 0 else None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return ProcessStatus.CANCELLED

            slice_ = self.wait_slice
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return ProcessStatus.TIMEOUT
                slice_ = min(slice_, remaining)

            try:
                process.wait(timeout=slice_)
                return ProcessStatus.COMPLETED
            except subprocess.TimeoutExpired:
                continue

    def _terminate_tree(self, process: subprocess.Popen):
        """Tue les descendants, le groupe de processus puis le processus lui-même"""
        kill_process_tree(process.pid, include_parent=False, timeout=self.kill_grace, logger=self.logger)

        if sys.platform != "win32":
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass

        try:
            process.kill()
        except OSError:
            pass

        try:
            process.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self.logger.error(f"Le processus {process.pid} ne s'est pas arrêté après kill")

    def _start_reader(self, stream, chunks: List[str], name: str) -> threading.Thread:
        """Démarre un thread qui lit un flux ligne par ligne"""
        def read():
            try:
                for raw in iter(stream.readline, b''):
                    line = raw.decode('utf-8', errors='replace')
                    chunks.append(line)
            except (OSError, ValueError):
                pass
            finally:
                stream.close()

        thread = threading.Thread(target=read, name=f"proc-{name}", daemon=True)
        thread.start()
        return thread

    def _start_writer(self, process: subprocess.Popen, input_text: str) -> threading.Thread:
        """Écrit le script sur stdin dans un thread pour ne pas bloquer l'attente"""
        def write():
            try:
                if input_text:
                    process.stdin.write(input_text.encode('utf-8'))
                    process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError):
                # Le processus s'est arrêté sans lire toute l'entrée
                pass
            finally:
                try:
                    process.stdin.close()
                except (BrokenPipeError, OSError):
                    pass

        thread = threading.Thread(target=write, name="proc-stdin", daemon=True)
        thread.start()
        return thread

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
