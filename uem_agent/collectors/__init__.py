"""
Module Collectors - Collecteurs de découverte

Chaque collecteur produit un instantané camelCase d'une catégorie :
- Matériel (processeurs, mémoire, stockage, réseau, périphériques)
- Logiciel (programmes installés, services)
- Sécurité (comptes, groupes, pare-feu, TPM, chiffrement, antivirus)
"""

from .hardware import HardwareCollector
from .software import SoftwareCollector
from .security import SecurityCollector

__all__ = ['HardwareCollector', 'SoftwareCollector', 'SecurityCollector']
