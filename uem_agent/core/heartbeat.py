"""
Heartbeat périodique de l'agent

Signale au plan de contrôle que l'agent est vivant, avec son identité
réseau (nom d'hôte, IP, MAC) et sa version.
"""

import os
import sys
import socket
from dataclasses import dataclass
from typing import Optional

import psutil

from .. import __version__
from .identity import hardware_fingerprint


@dataclass
class HeartbeatPayload:
    unique_id: str
    serial_number: Optional[str]
    hostname: str
    ip_address: Optional[str]
    mac_address: Optional[str]
    agent_version: Optional[str]


class HeartbeatService:
    """
    Collecte et envoie le heartbeat de l'agent
    """

    def __init__(self, config, logger, identity, client):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            identity: Instance de AgentIdentity
            client: Instance de ControlPlaneClient
        """
        self.config = config
        self.logger = logger.get_logger()
        self.identity = identity
        self.client = client
        self.last_sent = None

    def collect(self) -> HeartbeatPayload:
        """Construit le heartbeat à partir des interfaces actives"""
        ip_address, mac_address = self._primary_interface()
        return HeartbeatPayload(
            unique_id=hardware_fingerprint(),
            serial_number=self._serial_number(),
            hostname=socket.gethostname(),
            ip_address=ip_address,
            mac_address=mac_address,
            agent_version=__version__
        )

    def send_heartbeat(self) -> bool:
        """
        Envoie un heartbeat, en s'enregistrant d'abord si nécessaire

        Returns:
            bool: True si le plan de contrôle a accepté le heartbeat
        """
        if not self.identity.ensure_registered():
            self.logger.debug("Heartbeat ignoré: agent pas encore enregistré")
            return False

        payload = self.collect()
        success, message = self.client.post_json(f"/api/agents/{self.identity.agent_id}/heartbeat", payload)
        if success:
            self.last_sent = payload
            self.logger.info(f"Heartbeat envoyé ({self.identity.agent_id})")
        else:
            self.logger.warning(f"Heartbeat échoué: {message}")
        return success

    def _primary_interface(self):
        """
        Première interface active non-loopback

        Returns:
            tuple: (adresse IPv4, adresse MAC), chaque valeur pouvant être None
        """
        try:
            addresses = psutil.net_if_addrs()
            stats = psutil.net_if_stats()
        except (OSError, psutil.Error) as e:
            self.logger.warning(f"Erreur récupération interfaces réseau: {e}")
            return None, None

        for name, addrs in addresses.items():
            if name in stats and not stats[name].isup:
                continue
            ipv4 = next((a.address for a in addrs if a.family == socket.AF_INET), None)
            if ipv4 is None or ipv4.startswith('127.'):
                continue
            mac = next((a.address for a in addrs if a.family == psutil.AF_LINK), None)
            return ipv4, mac
        return None, None

    def _serial_number(self) -> Optional[str]:
        """Numéro de série de la machine, au mieux"""
        if sys.platform == "win32":
            return os.environ.get('COMPUTERNAME')
        if sys.platform.startswith("linux"):
            try:
                with open('/sys/class/dmi/id/product_serial', 'r', encoding='utf-8') as f:
                    return f.read().strip() or None
            except OSError:
                return None
        return socket.gethostname()
