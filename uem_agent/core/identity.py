"""
Identité de l'agent auprès du plan de contrôle

L'agent s'enregistre avec une empreinte matérielle et reçoit un identifiant
et un jeton bearer. Si la configuration fournit déjà ces valeurs, aucun
appel d'enregistrement n'est fait.
"""

import uuid
import socket
import hashlib
import platform
import threading
from typing import Optional

import requests


class AgentIdentity:
    """
    Détient l'identifiant d'agent et le jeton bearer

    ensure_registered() est rappelé à chaque passe qui a besoin de
    l'identité ; invalidate() force un nouvel enregistrement après un 401.
    """

    def __init__(self, config, logger, session: Optional[requests.Session] = None):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            session: Session requests (injectée pour les tests)
        """
        self.config = config
        self.logger = logger.get_logger()
        self.session = session or requests.Session()
        self._lock = threading.Lock()

        server_config = config.get_server_config()
        self.base_url = server_config['url']
        self.timeout = server_config['timeout']
        self.verify_ssl = server_config['verify_ssl']

        self._agent_id: Optional[str] = server_config['agent_id'] or None
        self._token: Optional[str] = server_config['auth_token'] or None
        self._static = bool(self._agent_id and self._token)

    @property
    def agent_id(self) -> Optional[str]:
        return self._agent_id

    @property
    def token(self) -> Optional[str]:
        return self._token

    def is_registered(self) -> bool:
        return bool(self._agent_id and self._token)

    def ensure_registered(self) -> bool:
        """
        Garantit que l'agent dispose d'un identifiant et d'un jeton

        Returns:
            bool: True si l'identité est disponible
        """
        with self._lock:
            if self.is_registered():
                return True

            url = f"{self.base_url}/api/agents/register"
            payload = {
                'encryptedKey': 'bootstrap-demo',
                'hardwareFingerprint': hardware_fingerprint(),
            }

            try:
                self.logger.info(f"Enregistrement de l'agent auprès de {url}")
                response = self.session.post(url, json=payload, timeout=self.timeout, verify=self.verify_ssl)
                if not 200 <= response.status_code < 300:
                    self.logger.warning(f"Enregistrement refusé: HTTP {response.status_code}")
                    return False
                data = response.json()
            except requests.exceptions.RequestException as e:
                self.logger.warning(f"Enregistrement impossible: {e}")
                return False
            except ValueError:
                self.logger.warning("Réponse d'enregistrement non-JSON")
                return False

            self._agent_id = data.get('agentId')
            self._token = data.get('jwt')
            if not self.is_registered():
                self.logger.error("Réponse d'enregistrement invalide (agentId ou jwt manquant)")
                return False

            self.logger.info(f"Agent enregistré: {self._agent_id}")
            return True

    def invalidate(self):
        """Oublie le jeton courant (sauf identité fixée par la configuration)"""
        with self._lock:
            if self._static:
                return
            self.logger.warning("Jeton d'agent invalidé, nouvel enregistrement au prochain passage")
            self._token = None


def primary_mac_address() -> str:
    """Adresse MAC principale formatée (aa:bb:cc:dd:ee:ff)"""
    node = uuid.getnode()
    return ':'.join(f"{(node >> shift) & 0xff:02x}" for shift in range(40, -1, -8))


def hardware_fingerprint() -> str:
    """
    Empreinte matérielle stable de l'hôte

    Returns:
        str: SHA-256 hexadécimal du nom d'hôte, de la MAC et de la plateforme
    """
    parts = [
        socket.gethostname(),
        primary_mac_address(),
        platform.machine(),
        platform.system(),
    ]
    return hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()
