"""
Module Discovery - Sessions de découverte d'entreprise

- Exécution concurrente des collecteurs matériel, logiciel et sécurité
- Persistance de chaque composant dès sa fin
- Calcul des métriques et transmission au plan de contrôle
"""

from .metrics import calculate_metrics
from .orchestrator import DiscoveryOrchestrator, DISCOVERY_VERSION

__all__ = ['calculate_metrics', 'DiscoveryOrchestrator', 'DISCOVERY_VERSION']
