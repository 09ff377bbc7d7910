"""
Module de planification pour l'agent

Ce module gère :
- La planification des tâches périodiques (politiques, heartbeat, découverte)
- L'exécution des tâches dans le pool de travail partagé
- L'absence de chevauchement d'une même tâche
- Le démarrage et arrêt du scheduler
"""

import threading
from concurrent.futures import Executor, Future
from datetime import datetime
from typing import Callable, Dict, Optional

import schedule


class ScheduledJob:
    """Tâche périodique enregistrée auprès du scheduler"""

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], None]):
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.job: Optional[schedule.Job] = None
        self.future: Optional[Future] = None
        self.last_run: Optional[datetime] = None
        self.run_count = 0
        self.skipped_count = 0

    @property
    def is_running(self) -> bool:
        return self.future is not None and not self.future.done()


class AgentScheduler:
    """
    Gestionnaire de planification pour l'agent

    Cette classe utilise une instance privée de 'schedule.Scheduler' : la
    boucle ne fait que déclencher les tâches, leur corps est soumis au pool
    de travail pour qu'une tâche lente ne retarde pas les autres.
    """

    def __init__(self, logger, executor: Executor, tick_seconds: float = 1.0):
        """
        Initialise le scheduler

        Args:
            logger: Instance de AgentLogger
            executor: Pool de travail partagé
            tick_seconds: Période de vérification des tâches dues
        """
        self.logger = logger.get_logger()
        self.executor = executor
        self.tick_seconds = tick_seconds

        self.scheduler = schedule.Scheduler()
        self.jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()

        # État du scheduler
        self.is_running = False
        self.scheduler_thread = None
        self.stop_event = threading.Event()

        self.logger.info("AgentScheduler initialisé")

    def add_interval_job(self, name: str, interval_seconds: float, func: Callable[[], None]) -> ScheduledJob:
        """
        Ajoute une tâche exécutée toutes les interval_seconds secondes

        Args:
            name: Nom unique de la tâche
            interval_seconds: Intervalle entre deux déclenchements
            func: Fonction à exécuter
        """
        if interval_seconds <= 0:
            raise ValueError(f"Intervalle invalide pour la tâche {name}: {interval_seconds}")

        scheduled = ScheduledJob(name, interval_seconds, func)
        scheduled.job = self.scheduler.every(interval_seconds).seconds.do(self._submit, scheduled)
        with self._lock:
            self.jobs[name] = scheduled

        self.logger.info(f"Tâche planifiée: {name} toutes les {interval_seconds}s")
        return scheduled

    def _submit(self, scheduled: ScheduledJob):
        """
        Soumet une tâche au pool, sauf si l'exécution précédente tourne encore
        """
        with self._lock:
            if scheduled.is_running:
                scheduled.skipped_count += 1
                self.logger.debug(f"Tâche {scheduled.name} encore en cours, déclenchement ignoré")
                return
            scheduled.future = self.executor.submit(self._run_job, scheduled)

    def _run_job(self, scheduled: ScheduledJob):
        """
        Exécute le corps d'une tâche

        Une exception est loggée et n'empêche pas les déclenchements suivants.
        """
        self.logger.debug(f"=== Tâche {scheduled.name} déclenchée ===")
        scheduled.last_run = datetime.now()
        scheduled.run_count += 1
        try:
            scheduled.func()
        except Exception:
            self.logger.exception(f"Erreur lors de l'exécution de la tâche {scheduled.name}")

    def run_now(self, name: str) -> bool:
        """
        Force le déclenchement immédiat d'une tâche

        Returns:
            bool: False si la tâche est inconnue ou déjà en cours
        """
        with self._lock:
            scheduled = self.jobs.get(name)
        if scheduled is None:
            self.logger.warning(f"Tâche inconnue: {name}")
            return False
        if scheduled.is_running:
            return False

        self.logger.info(f"Exécution forcée de la tâche {name}")
        self._submit(scheduled)
        return True

    def start(self):
        """
        Démarre le scheduler en arrière-plan

        Lance un thread séparé qui exécute la boucle de planification.
        """
        if self.is_running:
            self.logger.warning("Scheduler déjà en cours d'exécution")
            return

        self.logger.info("Démarrage du scheduler...")

        self.is_running = True
        self.stop_event.clear()

        self.scheduler_thread = threading.Thread(
            target=self._scheduler_loop,
            name="AgentScheduler",
            daemon=True
        )
        self.scheduler_thread.start()

        self.logger.info(f"Scheduler démarré ({len(self.jobs)} tâches)")

    def stop(self):
        """
        Arrête le scheduler

        Les tâches déjà soumises au pool se terminent d'elles-mêmes.
        """
        if not self.is_running:
            return

        self.logger.info("Arrêt du scheduler...")

        self.is_running = False
        self.stop_event.set()

        if self.scheduler_thread and self.scheduler_thread.is_alive():
            self.scheduler_thread.join(timeout=5)

        self.logger.info("Scheduler arrêté")

    def _scheduler_loop(self):
        """
        Boucle principale du scheduler

        Vérifie chaque seconde s'il faut déclencher des tâches, jusqu'à ce
        qu'on demande l'arrêt.
        """
        self.logger.debug("Boucle du scheduler démarrée")

        while not self.stop_event.is_set():
            try:
                self.scheduler.run_pending()
            except Exception:
                self.logger.exception("Erreur dans la boucle du scheduler")
            self.stop_event.wait(timeout=self.tick_seconds)

        self.logger.debug("Boucle du scheduler terminée")

    def get_status(self) -> dict:
        """
        Retourne le statut actuel du scheduler

        Returns:
            dict: Informations sur l'état du scheduler et de chaque tâche
        """
        with self._lock:
            jobs = list(self.jobs.values())

        return {
            'is_running': self.is_running,
            'scheduled_jobs_count': len(jobs),
            'jobs': {
                job.name: {
                    'interval_seconds': job.interval_seconds,
                    'running': job.is_running,
                    'run_count': job.run_count,
                    'skipped_count': job.skipped_count,
                    'last_run': job.last_run.isoformat() if job.last_run else None,
                    'next_run': job.job.next_run.isoformat() if job.job and job.job.next_run else None,
                }
                for job in jobs
            }
        }
