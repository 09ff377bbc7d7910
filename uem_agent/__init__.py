"""
UEM Endpoint Agent - Agent d'exécution distante multi-plateforme

Ce module principal fournit un agent qui reçoit des commandes et des politiques
depuis le plan de contrôle, les exécute localement (scripts, shells) et
remonte les résultats de manière fiable malgré une connectivité intermittente.

Author: UEM Endpoint Agent Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "UEM Endpoint Agent Team"

# Imports principaux pour faciliter l'utilisation
from .core.config import AgentConfig
from .core.logger import AgentLogger

__all__ = ['AgentConfig', 'AgentLogger', '__version__']
