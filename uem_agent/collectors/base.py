"""
Classe de base pour tous les collecteurs de découverte

Ce module définit l'interface commune que tous les collecteurs
doivent implémenter, ainsi que des utilitaires partagés.
"""

import re
import json
import time
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.serialization import format_datetime, utcnow


class BaseCollector(ABC):
    """
    Classe de base abstraite pour tous les collecteurs

    collect() peut lever une exception : l'orchestrateur de découverte
    l'isole et remplace le résultat par un instantané horodaté vide.
    """

    #: Catégorie de découverte produite (hardware, software, security)
    category = ''

    def __init__(self, config, logger):
        """
        Initialise le collecteur de base

        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
        """
        self.config = config
        self.logger = logger.get_logger()

        # Métadonnées du collecteur
        self.collector_name = self.__class__.__name__
        self.collection_start_time = None
        self.collection_errors: List[str] = []
        self.last_collection_duration = 0.0

    @abstractmethod
    def collect(self) -> Dict[str, Any]:
        """
        Méthode principale de collecte - doit être implémentée par chaque collecteur

        Returns:
            dict: Instantané camelCase incluant discoveryTimestamp
        """

    def _start_collection(self) -> Dict[str, Any]:
        """
        Démarre une session de collecte

        Returns:
            dict: Instantané initial horodaté
        """
        self.collection_start_time = time.time()
        self.collection_errors = []
        self.logger.debug(f"Début collecte {self.collector_name}")
        return {'discoveryTimestamp': format_datetime(utcnow())}

    def _end_collection(self) -> float:
        """
        Termine une session de collecte

        Returns:
            float: Durée de collecte en secondes
        """
        if not self.collection_start_time:
            return 0.0

        duration = time.time() - self.collection_start_time
        self.logger.debug(f"Collecte {self.collector_name} terminée en {duration:.2f}s")
        if self.collection_errors:
            self.logger.warning(f"Collecte {self.collector_name} avec {len(self.collection_errors)} erreur(s)")
        self.last_collection_duration = duration
        return duration

    def _safe_execute(self, func, error_message: str = "Erreur lors de l'exécution", default_value=None):
        """
        Exécute une fonction de manière sécurisée avec gestion d'erreur

        Args:
            func: Fonction à exécuter
            error_message: Message d'erreur personnalisé
            default_value: Valeur par défaut en cas d'erreur

        Returns:
            Résultat de la fonction ou default_value
        """
        try:
            return func()
        except Exception as e:
            error_details = f"{error_message}: {str(e)}"
            self.collection_errors.append(error_details)
            self.logger.warning(error_details)
            return default_value

    def _execute_command(self, command: str, timeout: int = 30) -> Optional[str]:
        """
        Exécute une commande système et retourne le résultat

        Args:
            command: Commande à exécuter
            timeout: Timeout en secondes

        Returns:
            str: Sortie de la commande ou None en cas d'erreur
        """
        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Timeout pour la commande: {command}")
            return None
        except OSError as e:
            self.logger.warning(f"Erreur lors de l'exécution de '{command}': {e}")
            return None

        if result.returncode != 0:
            self.logger.debug(f"Commande échouée: {command} (code: {result.returncode})")
            return None
        return result.stdout.strip()

    def _powershell_json(self, script: str) -> List[Dict[str, Any]]:
        """
        Exécute une commande PowerShell dont la sortie passe par ConvertTo-Json

        Returns:
            list: Objets décodés (un objet unique est mis en liste)
        """
        output = self._execute_command(
            f'powershell -NoProfile -NonInteractive -Command "{script} | ConvertTo-Json -Depth 4"'
        )
        if not output:
            return []
        try:
            data = json.loads(output)
        except ValueError:
            self.logger.debug(f"Sortie PowerShell non-JSON pour: {script}")
            return []
        if isinstance(data, dict):
            return [data]
        return data if isinstance(data, list) else []

    def _read_file(self, file_path: str) -> Optional[str]:
        """
        Lit un fichier de manière sécurisée

        Args:
            file_path: Chemin vers le fichier

        Returns:
            str: Contenu du fichier ou None
        """
        try:
            with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
                return f.read().strip()
        except OSError:
            return None

    def _clean_string(self, value: Any) -> str:
        """
        Nettoie une chaîne de caractères

        Supprime les caractères de contrôle et les espaces multiples.
        """
        if not value:
            return ""
        value = ''.join(char for char in str(value).strip() if char.isprintable())
        return re.sub(r'\s+', ' ', value)
