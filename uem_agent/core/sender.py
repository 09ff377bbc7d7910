"""
Module de communication HTTP avec le plan de contrôle

Ce module gère :
- L'envoi des résultats (politiques, commandes, découverte, heartbeat)
- La récupération des commandes de politique en attente
- L'authentification bearer
- La conversion des erreurs réseau en résultats (succès, message)
"""

import json
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import requests
import urllib3

from .. import __version__
from .serialization import to_wire

# Le plan de contrôle utilise souvent un certificat auto-signé
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class ControlPlaneClient:
    """
    Client HTTP du plan de contrôle

    Les erreurs réseau ne sont jamais propagées : chaque appel retourne
    un statut que l'appelant utilise pour décider d'une nouvelle tentative
    au passage suivant.
    """

    def __init__(self, config, logger, identity, session: Optional[requests.Session] = None):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            identity: Instance de AgentIdentity (jeton bearer)
            session: Session requests (injectée pour les tests)
        """
        self.config = config
        self.logger = logger.get_logger()
        self.identity = identity
        self.session = session or requests.Session()

        server_config = config.get_server_config()
        self.base_url = server_config['url']
        self.timeout = server_config['timeout']
        self.long_timeout = server_config['long_timeout']
        self.verify_ssl = server_config['verify_ssl']

        # Statistiques de communication
        self._stats_lock = threading.Lock()
        self.last_successful_send = None
        self.send_attempts = 0
        self.send_failures = 0

        self.logger.info(f"ControlPlaneClient initialisé (URL serveur: {self.base_url})")

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': f'UEMEndpointAgent/{__version__}'
        }
        if self.identity is not None and self.identity.token:
            headers['Authorization'] = f'Bearer {self.identity.token}'
        if extra:
            headers.update(extra)
        return headers

    def post_json(self, path: str, payload: Any, headers: Optional[Dict[str, str]] = None,
                  timeout: Optional[float] = None, omit_none: bool = False) -> Tuple[bool, str]:
        """
        Envoie un document JSON camelCase au plan de contrôle

        Args:
            path: Chemin relatif à l'URL de base
            payload: dataclass ou structure JSON
            headers: En-têtes supplémentaires
            timeout: Timeout spécifique (défaut: timeout serveur)
            omit_none: Supprime les champs nuls du document

        Returns:
            Tuple[bool, str]: (Succès, Message de résultat)
        """
        self._count_attempt()
        url = self.url(path)

        try:
            body = json.dumps(to_wire(payload, omit_none), ensure_ascii=False)
            self.logger.debug(f"POST {url} ({len(body)} bytes)")

            response = self.session.post(
                url,
                data=body.encode('utf-8'),
                headers=self._headers(headers),
                timeout=timeout or self.timeout,
                verify=self.verify_ssl
            )

            if 200 <= response.status_code < 300:
                with self._stats_lock:
                    self.last_successful_send = datetime.now()
                return True, f"HTTP {response.status_code}"

            self._count_failure()
            if response.status_code == 401:
                error_msg = "Erreur d'authentification (jeton invalide ou manquant)"
                if self.identity is not None:
                    self.identity.invalidate()
            elif response.status_code == 403:
                error_msg = "Accès refusé par le serveur"
            elif response.status_code == 400:
                error_msg = f"Données invalides: {response.text[:200]}"
            else:
                error_msg = f"Erreur serveur HTTP {response.status_code}: {response.text[:200]}"
            self.logger.warning(f"POST {path} échoué: {error_msg}")
            return False, error_msg

        except requests.exceptions.Timeout:
            self._count_failure()
            error_msg = f"Timeout lors de l'envoi (>{timeout or self.timeout}s)"
            self.logger.warning(f"POST {path}: {error_msg}")
            return False, error_msg

        except requests.exceptions.SSLError as e:
            self._count_failure()
            error_msg = f"Erreur SSL: {e}"
            self.logger.warning(f"POST {path}: {error_msg}")
            return False, error_msg

        except requests.exceptions.ConnectionError as e:
            self._count_failure()
            error_msg = f"Erreur de connexion: {e}"
            self.logger.warning(f"POST {path}: {error_msg}")
            return False, error_msg

        except requests.exceptions.RequestException as e:
            self._count_failure()
            error_msg = f"Erreur inattendue: {e}"
            self.logger.exception(f"Erreur lors du POST {path}")
            return False, error_msg

    def get_json(self, path: str, timeout: Optional[float] = None) -> Tuple[int, Any]:
        """
        Récupère un document JSON

        Returns:
            Tuple[int, Any]: (code HTTP ou 0 si erreur réseau, document décodé ou None)
        """
        url = self.url(path)
        try:
            response = self.session.get(
                url,
                headers=self._headers(),
                timeout=timeout or self.timeout,
                verify=self.verify_ssl
            )
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"GET {path} impossible: {e}")
            return 0, None

        if response.status_code == 401 and self.identity is not None:
            self.identity.invalidate()

        if not 200 <= response.status_code < 300:
            return response.status_code, None

        try:
            return response.status_code, response.json()
        except ValueError:
            self.logger.warning(f"GET {path}: réponse non-JSON")
            return response.status_code, None

    def _count_attempt(self):
        with self._stats_lock:
            self.send_attempts += 1

    def _count_failure(self):
        with self._stats_lock:
            self.send_failures += 1

    def get_stats(self) -> Dict[str, Any]:
        """
        Retourne les statistiques de communication

        Returns:
            dict: Statistiques d'envoi
        """
        with self._stats_lock:
            attempts, failures = self.send_attempts, self.send_failures
            last = self.last_successful_send
        return {
            'last_successful_send': last.isoformat() if last else None,
            'total_attempts': attempts,
            'total_failures': failures,
            'success_rate': ((attempts - failures) / attempts * 100) if attempts > 0 else 0,
            'server_url': self.base_url
        }
