"""
Module de configuration pour l'agent

Ce module gère la configuration de l'agent, incluant :
- Lecture des fichiers de configuration
- Surcharge par l'installateur et par variables d'environnement
- Validation des paramètres
- Valeurs par défaut spécifiques par plateforme
"""

import os
import sys
import configparser
from typing import Dict, Any, Optional


class AgentConfig:
    """
    Gestionnaire de configuration pour l'agent

    Cette classe centralise la gestion de toute la configuration de l'agent :
    serveur, canal de commandes, politiques, découverte, stockage et logs.
    Une instance est passée explicitement à chaque composant.
    """

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialise la configuration de l'agent

        Args:
            config_file: Chemin vers le fichier de configuration (optionnel)
            environ: Variables d'environnement à utiliser (os.environ par défaut)
        """
        self.config = configparser.ConfigParser()
        self.config_file = config_file or self._get_default_config_path()
        self.environ = os.environ if environ is None else environ

        # Définir les valeurs par défaut
        self._set_defaults()

        # Charger la configuration depuis le fichier
        self._load_config()

        # Les variables d'environnement ont le dernier mot
        self._apply_environment()

    def _get_default_config_path(self) -> str:
        """
        Détermine le chemin par défaut du fichier de configuration selon la plateforme

        Returns:
            str: Chemin vers le fichier de configuration
        """
        if sys.platform == "win32":
            return os.path.join(
                os.environ.get("PROGRAMFILES", "C:\\Program Files"),
                "UEM Endpoint Agent",
                "config",
                "agent.conf"
            )
        return "/etc/uem-endpoint-agent/agent.conf"

    def _get_default_data_dir(self) -> str:
        """
        Détermine le dossier de données par défaut (base SQLite locale)

        Returns:
            str: Chemin du dossier de données
        """
        if sys.platform == "win32":
            return os.path.join(
                os.environ.get("PROGRAMDATA", "C:\\ProgramData"),
                "UEMEndpointAgent",
                "data"
            )
        elif sys.platform == "darwin":
            return "/Library/Application Support/UEMEndpointAgent"
        return "/var/lib/uem-endpoint-agent"

    def _get_default_log_path(self) -> str:
        """
        Détermine le chemin par défaut des logs selon la plateforme

        Returns:
            str: Chemin vers le fichier de log
        """
        if sys.platform == "win32":
            return os.path.join(
                os.environ.get("PROGRAMDATA", "C:\\ProgramData"),
                "UEMEndpointAgent",
                "logs",
                "agent.log"
            )
        return "/var/log/uem-endpoint-agent/agent.log"

    def _set_defaults(self):
        """
        Définit les valeurs de configuration par défaut

        Ces valeurs sont utilisées si aucun fichier de configuration n'est trouvé
        ou si certaines sections/clés sont manquantes.
        """
        # Configuration serveur (plan de contrôle)
        self.config.add_section('server')
        self.config.set('server', 'url', 'https://localhost:7200')
        self.config.set('server', 'auth_token', '')
        self.config.set('server', 'agent_id', '')
        self.config.set('server', 'timeout', '30')
        self.config.set('server', 'long_timeout', '600')
        self.config.set('server', 'verify_ssl', 'false')

        # Configuration agent
        self.config.add_section('agent')
        self.config.set('agent', 'log_level', 'INFO')
        self.config.set('agent', 'heartbeat_interval', '30')
        self.config.set('agent', 'max_workers', '8')
        self.config.set('agent', 'error_backoff', '60')

        # Canal de commandes persistant
        self.config.add_section('channel')
        self.config.set('channel', 'enabled', 'true')
        self.config.set('channel', 'reconnect_delay', '120')
        self.config.set('channel', 'read_timeout', '300')
        self.config.set('channel', 'keepalive_interval', '15')
        self.config.set('channel', 'legacy_inline_execution', 'false')

        # Politiques multi-étapes
        self.config.add_section('policy')
        self.config.set('policy', 'poll_interval', '30')
        self.config.set('policy', 'retry_backoff_unit', '2')
        self.config.set('policy', 'retry_backoff_cap', '30')
        self.config.set('policy', 'report_max_attempts', '0')  # 0 = illimité
        self.config.set('policy', 'report_backoff', '0')

        # Découverte matériel / logiciel / sécurité
        self.config.add_section('discovery')
        self.config.set('discovery', 'enabled', 'true')
        self.config.set('discovery', 'enable_periodic', 'true')
        self.config.set('discovery', 'interval_hours', '24')

        # Stockage local
        self.config.add_section('storage')
        self.config.set('storage', 'database', os.path.join(self._get_default_data_dir(), 'agentdata.db'))

        # Interface web locale
        self.config.add_section('web_interface')
        self.config.set('web_interface', 'enabled', 'true')
        self.config.set('web_interface', 'port', '18743')
        self.config.set('web_interface', 'host', '127.0.0.1')

        # Configuration logging
        self.config.add_section('logging')
        self.config.set('logging', 'log_file', self._get_default_log_path())
        self.config.set('logging', 'max_log_size', '10485760')  # 10MB
        self.config.set('logging', 'backup_count', '5')

    def _load_config(self):
        """
        Charge la configuration depuis le fichier

        Si le fichier n'existe pas, utilise les valeurs par défaut.
        En cas d'erreur de lecture, signale l'erreur et continue avec les défauts.
        """
        try:
            if os.path.exists(self.config_file):
                self.config.read(self.config_file, encoding='utf-8')
                print(f"Configuration chargée depuis: {self.config_file}")
            else:
                print(f"Fichier de configuration non trouvé: {self.config_file}")
                print("Utilisation des valeurs par défaut")

            # Charger aussi le fichier server.conf créé par l'installateur (prioritaire)
            self._load_installer_config()

        except configparser.Error as e:
            print(f"Erreur lors du chargement de la configuration: {e}")
            print("Utilisation des valeurs par défaut")

    def _load_installer_config(self):
        """
        Charge la configuration serveur créée par l'installateur

        Le fichier server.conf se trouve dans le même dossier que le fichier
        principal et a priorité sur celui-ci.
        """
        installer_config_path = os.path.join(os.path.dirname(self.config_file), "server.conf")
        if not os.path.exists(installer_config_path):
            return

        installer_config = configparser.ConfigParser()
        installer_config.read(installer_config_path, encoding='utf-8')

        # Copier les sections du fichier installateur vers la config principale
        for section_name in installer_config.sections():
            if not self.config.has_section(section_name):
                self.config.add_section(section_name)

            for option, value in installer_config.items(section_name):
                self.config.set(section_name, option, value)

        print(f"Configuration serveur de l'installateur chargée depuis: {installer_config_path}")

    def _apply_environment(self):
        """
        Applique les surcharges issues des variables d'environnement

        SATELLITE_BASE_URL remplace l'URL du plan de contrôle (guillemets retirés).
        """
        base_url = self.environ.get('SATELLITE_BASE_URL')
        if base_url:
            self.config.set('server', 'url', base_url.strip().strip('"\''))

    def get(self, section: str, option: str, fallback: Any = None) -> str:
        """
        Récupère une valeur de configuration

        Args:
            section: Nom de la section
            option: Nom de l'option
            fallback: Valeur par défaut si non trouvée

        Returns:
            str: Valeur de configuration
        """
        return self.config.get(section, option, fallback=fallback)

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Récupère une valeur booléenne de configuration"""
        return self.config.getboolean(section, option, fallback=fallback)

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Récupère une valeur entière de configuration"""
        return self.config.getint(section, option, fallback=fallback)

    def getfloat(self, section: str, option: str, fallback: float = 0.0) -> float:
        """Récupère une valeur décimale de configuration"""
        return self.config.getfloat(section, option, fallback=fallback)

    def set(self, section: str, option: str, value: Any):
        """
        Définit une valeur de configuration

        Args:
            section: Nom de la section
            option: Nom de l'option
            value: Nouvelle valeur
        """
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, option, str(value))

    def save(self):
        """
        Sauvegarde la configuration dans le fichier

        Crée les dossiers parents si nécessaire.
        """
        config_dir = os.path.dirname(self.config_file)
        if config_dir and not os.path.exists(config_dir):
            os.makedirs(config_dir, exist_ok=True)

        with open(self.config_file, 'w', encoding='utf-8') as f:
            self.config.write(f)

        print(f"Configuration sauvegardée dans: {self.config_file}")

    def get_server_config(self) -> Dict[str, Any]:
        """
        Récupère la configuration complète du serveur

        Returns:
            dict: Configuration serveur
        """
        return {
            'url': self.get('server', 'url', '').rstrip('/'),
            'auth_token': self.get('server', 'auth_token', ''),
            'agent_id': self.get('server', 'agent_id', ''),
            'timeout': self.getint('server', 'timeout', 30),
            'long_timeout': self.getint('server', 'long_timeout', 600),
            'verify_ssl': self.getboolean('server', 'verify_ssl', False)
        }

    def get_agent_config(self) -> Dict[str, Any]:
        """Récupère la configuration générale de l'agent"""
        return {
            'log_level': self.get('agent', 'log_level', 'INFO'),
            'heartbeat_interval': self.getint('agent', 'heartbeat_interval', 30),
            'max_workers': self.getint('agent', 'max_workers', 8),
            'error_backoff': self.getint('agent', 'error_backoff', 60)
        }

    def get_channel_config(self) -> Dict[str, Any]:
        """Récupère la configuration du canal de commandes"""
        return {
            'enabled': self.getboolean('channel', 'enabled', True),
            'reconnect_delay': self.getfloat('channel', 'reconnect_delay', 120),
            'read_timeout': self.getfloat('channel', 'read_timeout', 300),
            'keepalive_interval': self.getfloat('channel', 'keepalive_interval', 15),
            'legacy_inline_execution': self.getboolean('channel', 'legacy_inline_execution', False)
        }

    def get_policy_config(self) -> Dict[str, Any]:
        """Récupère la configuration d'exécution des politiques"""
        return {
            'poll_interval': self.getint('policy', 'poll_interval', 30),
            'retry_backoff_unit': self.getfloat('policy', 'retry_backoff_unit', 2),
            'retry_backoff_cap': self.getfloat('policy', 'retry_backoff_cap', 30),
            'report_max_attempts': self.getint('policy', 'report_max_attempts', 0),
            'report_backoff': self.getint('policy', 'report_backoff', 0)
        }

    def get_discovery_config(self) -> Dict[str, Any]:
        """Récupère la configuration de la découverte"""
        return {
            'enabled': self.getboolean('discovery', 'enabled', True),
            'enable_periodic': self.getboolean('discovery', 'enable_periodic', True),
            'interval_hours': self.getfloat('discovery', 'interval_hours', 24)
        }

    def get_web_config(self) -> Dict[str, Any]:
        """Récupère la configuration complète de l'interface web"""
        return {
            'enabled': self.getboolean('web_interface', 'enabled', True),
            'port': self.getint('web_interface', 'port', 18743),
            'host': self.get('web_interface', 'host', '127.0.0.1')
        }

    def validate(self) -> bool:
        """
        Valide la configuration courante

        Returns:
            bool: True si la configuration est valide, False sinon
        """
        errors = []

        # Valider l'URL du serveur
        server_url = self.get('server', 'url')
        if not server_url or not server_url.startswith(('http://', 'https://')):
            errors.append("URL serveur invalide")

        # Valider le niveau de log
        log_level = self.get('agent', 'log_level', '').upper()
        if log_level not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            errors.append("Niveau de log invalide")

        # Valider les intervalles
        try:
            intervals = {
                'agent.heartbeat_interval': self.getint('agent', 'heartbeat_interval'),
                'policy.poll_interval': self.getint('policy', 'poll_interval'),
                'discovery.interval_hours': self.getfloat('discovery', 'interval_hours'),
            }
            for name, value in intervals.items():
                if value <= 0:
                    errors.append(f"Intervalle invalide pour {name} (doit être > 0)")
        except ValueError as e:
            errors.append(f"Valeur numérique invalide: {e}")

        # Valider le port web
        try:
            web_port = self.getint('web_interface', 'port')
            if not (1 <= web_port <= 65535):
                errors.append("Port interface web invalide (doit être entre 1 et 65535)")
        except ValueError:
            errors.append("Port interface web invalide")

        if errors:
            for error in errors:
                print(f"Erreur de configuration: {error}")
            return False

        return True


def create_default_config(config_path: str) -> AgentConfig:
    """
    Crée un fichier de configuration par défaut

    Args:
        config_path: Chemin où créer le fichier de configuration

    Returns:
        AgentConfig: Instance de configuration créée
    """
    config = AgentConfig(config_path)
    config.save()
    return config
