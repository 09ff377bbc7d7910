"""
Module de logging pour l'agent

Ce module fournit un système de logging centralisé avec :
- Rotation automatique des logs
- Différents niveaux de log
- Formatage cohérent
- Masquage des secrets lors de l'affichage de la configuration
"""

import os
import sys
import logging
import logging.handlers


DEFAULT_LOGGER_NAME = 'UEMEndpointAgent'


class AgentLogger:
    """
    Gestionnaire de logging pour l'agent

    Cette classe configure le logger de l'application. Chaque composant
    reçoit l'instance en paramètre et appelle get_logger().
    """

    def __init__(self, config=None, name: str = DEFAULT_LOGGER_NAME, console: bool = True):
        """
        Initialise le système de logging

        Args:
            config: Instance de AgentConfig pour récupérer les paramètres de log
            name: Nom du logger (permet d'isoler les tests)
            console: Ajoute un handler console en plus du fichier
        """
        self.config = config
        self.console = console
        self.logger = logging.getLogger(name)

        # Éviter la duplication si déjà configuré
        if not self.logger.handlers:
            self._setup_logging()

    def _setup_logging(self):
        """
        Configure le système de logging avec les handlers appropriés
        """
        if self.config:
            log_level_str = self.config.get('agent', 'log_level', 'INFO')
            log_file = self.config.get('logging', 'log_file')
            max_size = self.config.getint('logging', 'max_log_size', 10485760)
            backup_count = self.config.getint('logging', 'backup_count', 5)
        else:
            log_level_str = 'INFO'
            log_file = self._get_default_log_file()
            max_size = 10485760
            backup_count = 5

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)
        self.logger.setLevel(log_level)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] [%(filename)s:%(lineno)d] - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Handler pour fichier avec rotation
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file,
                maxBytes=max_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        except OSError as e:
            print(f"Erreur lors de la configuration du logging fichier: {e}")

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(logging.Formatter(fmt='%(levelname)s - %(message)s'))
            self.logger.addHandler(console_handler)

        self.logger.info("Système de logging initialisé")
        if self.config:
            self.logger.info(f"Niveau de log: {log_level_str}")
            self.logger.info(f"Fichier de log: {log_file}")

    def _get_default_log_file(self) -> str:
        """
        Détermine le fichier de log par défaut selon la plateforme

        Returns:
            str: Chemin vers le fichier de log par défaut
        """
        if sys.platform == "win32":
            return os.path.join(os.environ.get("TEMP", "C:\\temp"), "uem-endpoint-agent.log")
        return "/tmp/uem-endpoint-agent.log"

    def get_logger(self) -> logging.Logger:
        """
        Retourne l'instance du logger

        Returns:
            logging.Logger: Instance du logger configuré
        """
        return self.logger

    def info(self, message: str):
        """Log un message de niveau INFO"""
        self.logger.info(message)

    def exception(self, message: str):
        """Log une exception avec sa stack trace"""
        self.logger.exception(message)

    def log_system_info(self):
        """
        Log les informations système de base au démarrage
        """
        self.info(f"Plateforme: {sys.platform}")
        self.info(f"Version Python: {sys.version}")
        self.info(f"Répertoire de travail: {os.getcwd()}")

    def log_config_info(self, config):
        """
        Log les informations de configuration (sans les données sensibles)

        Args:
            config: Instance de AgentConfig
        """
        self.info("=== Configuration de l'agent ===")

        groups = {
            'Agent': config.get_agent_config(),
            'Channel': config.get_channel_config(),
            'Policy': config.get_policy_config(),
            'Discovery': config.get_discovery_config(),
        }
        for prefix, values in groups.items():
            for key, value in values.items():
                self.info(f"{prefix}.{key}: {value}")

        for key, value in config.get_server_config().items():
            if key == 'auth_token':
                # Ne pas logger le token complet
                token_preview = value[:8] + "..." if len(value) > 8 else "Non configuré"
                self.info(f"Server.{key}: {token_preview}")
            else:
                self.info(f"Server.{key}: {value}")

        self.info("=== Fin configuration ===")
