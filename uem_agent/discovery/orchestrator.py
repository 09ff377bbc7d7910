"""
Orchestrateur de découverte d'entreprise

Ce module coordonne une session de découverte :
- Lancement concurrent des collecteurs (matériel, logiciel, sécurité)
- Persistance de chaque composant dès qu'il est terminé
- Agrégation et calcul des métriques après la barrière de jointure
- Transmission unique au plan de contrôle, sans nouvelle tentative
"""

import time
import uuid
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

from .. import __version__
from ..collectors import HardwareCollector, SoftwareCollector, SecurityCollector
from ..core.serialization import format_datetime, utcnow
from .metrics import calculate_metrics


DISCOVERY_VERSION = "1.0.0"


class DiscoveryOrchestrator:
    """
    Orchestrateur des sessions de découverte

    Une seule session s'exécute à la fois ; un déclenchement pendant une
    session en cours est ignoré.
    """

    def __init__(self, config, logger, identity, client, store, collectors: Optional[List] = None):
        """
        Initialise l'orchestrateur

        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            identity: Instance de AgentIdentity
            client: Instance de ControlPlaneClient
            store: Instance de LocalStore
            collectors: Collecteurs à utiliser (défaut: matériel, logiciel, sécurité)
        """
        self.config = config
        self.logger = logger.get_logger()
        self.identity = identity
        self.client = client
        self.store = store

        if collectors is None:
            collectors = [
                HardwareCollector(config, logger),
                SoftwareCollector(config, logger),
                SecurityCollector(config, logger),
            ]
        self.collectors = collectors

        self._lock = threading.Lock()
        self._running = False

        # Statistiques
        self.last_session: Optional[Dict[str, Any]] = None
        self.last_success: Optional[bool] = None
        self.session_count = 0

        self.logger.info(f"DiscoveryOrchestrator initialisé ({len(self.collectors)} collecteurs)")

    @property
    def is_running(self) -> bool:
        return self._running

    def trigger_discovery(self) -> bool:
        """Déclenchement à la demande (commande réservée, API locale)"""
        self.logger.info("Découverte déclenchée à la demande")
        return self.run_discovery()

    def run_discovery(self) -> bool:
        """
        Exécute une session complète de découverte

        Returns:
            bool: True si la session a été transmise
        """
        with self._lock:
            if self._running:
                self.logger.warning("Découverte déjà en cours - déclenchement ignoré")
                return False
            self._running = True

        try:
            if not self.identity.ensure_registered():
                self.logger.warning("Agent non enregistré - découverte reportée")
                return False

            session = self.collect_session()
            return self.transmit(session)

        except Exception:
            self.logger.exception("Erreur lors de la session de découverte")
            return False

        finally:
            with self._lock:
                self._running = False

    def collect_session(self) -> Dict[str, Any]:
        """
        Collecte les trois catégories et assemble la session

        Returns:
            dict: Session de découverte camelCase
        """
        session_id = str(uuid.uuid4())
        start_time = time.time()
        self.logger.info(f"=== Début de la session de découverte {session_id} ===")

        results: Dict[str, Dict[str, Any]] = {}
        with ThreadPoolExecutor(max_workers=len(self.collectors) or 1,
                                thread_name_prefix="Discovery") as pool:
            futures = [
                pool.submit(self._run_collector, session_id, collector, results)
                for collector in self.collectors
            ]
            # Barrière : l'agrégation attend la fin de tous les collecteurs
            wait(futures)

        hardware = results.get('hardware')
        software = results.get('software')
        security = results.get('security')

        session = {
            'sessionId': session_id,
            'agentId': self.identity.agent_id,
            'timestamp': format_datetime(utcnow()),
            'discoveryVersion': DISCOVERY_VERSION,
            'hardware': hardware,
            'software': software,
            'security': security,
            'discoveryMetrics': calculate_metrics(hardware, software, security),
        }

        self.store.store_discovery_session(session_id, self.identity.agent_id, session)
        self.last_session = session
        self.session_count += 1

        self.logger.info(f"Session {session_id} collectée en {time.time() - start_time:.2f}s")
        return session

    def _run_collector(self, session_id: str, collector, results: Dict[str, Dict[str, Any]]):
        """
        Exécute un collecteur et persiste immédiatement son résultat

        Un collecteur en échec est remplacé par un instantané horodaté vide.
        """
        category = collector.category
        try:
            data = collector.collect()
            succeeded = True
        except Exception as e:
            self.logger.error(f"Collecteur {category} en échec: {e}")
            data = {'discoveryTimestamp': format_datetime(utcnow())}
            succeeded = False

        results[category] = data
        try:
            self.store.store_discovery_component(session_id, category, data, succeeded)
        except Exception:
            self.logger.exception(f"Erreur de persistance du composant {category}")

    def transmit(self, session: Dict[str, Any]) -> bool:
        """
        Transmet la session au plan de contrôle

        Un échec est journalisé et audité ; le cycle suivant sert de nouvelle tentative.
        """
        session_id = session['sessionId']
        agent_id = self.identity.agent_id

        success, message = self.client.post_json(
            f"/api/agents/{agent_id}/enterprise-discovery",
            session,
            headers={
                'X-Discovery-Session-Id': session_id,
                'X-Agent-Version': __version__,
            },
            timeout=self.client.long_timeout,
            omit_none=True
        )

        self.last_success = success
        if success:
            self.store.mark_session_transmitted(session_id)
            self.store.record_audit_event('discovery_transmitted', session_id,
                                          {'metrics': session['discoveryMetrics']})
            self.logger.info(f"Session de découverte {session_id} transmise: {message}")
        else:
            self.store.record_audit_event('discovery_failed', session_id, {'error': message})
            self.logger.error(f"Échec de transmission de la session {session_id}: {message}")
        return success

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'session_count': self.session_count,
            'last_session_id': self.last_session['sessionId'] if self.last_session else None,
            'last_success': self.last_success,
        }
