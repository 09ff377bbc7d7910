"""
Application Flask de l'API locale de statut

L'API écoute sur l'interface de bouclage uniquement et n'expose
aucune opération d'exécution de script.
"""

import sys
import socket
import logging
import threading
from datetime import datetime

from flask import Flask, jsonify, request


LOOPBACK_HOSTS = ('127.0.0.1', 'localhost', '::1')


class LocalStatusApp:
    """
    API web locale de l'agent

    Cette classe encapsule l'application Flask et ses routes ; les
    composants de l'agent sont injectés par l'appelant.
    """

    def __init__(self, config, logger, store, script_service, discovery=None, status_provider=None):
        """
        Initialise l'application web

        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            store: Instance de LocalStore
            script_service: Instance de ScriptExecutionService
            discovery: Instance de DiscoveryOrchestrator (optionnelle)
            status_provider: Callable retournant le statut global de l'agent
        """
        self.config = config
        self.app_logger = logger.get_logger()
        self.store = store
        self.script_service = script_service
        self.discovery = discovery
        self.status_provider = status_provider
        self._thread = None

        self.app = Flask(__name__)

        # Désactiver les logs Flask pour éviter la pollution
        logging.getLogger('werkzeug').setLevel(logging.ERROR)

        self._register_routes()

        self.app_logger.info("API locale initialisée")

    def _register_routes(self):
        """
        Enregistre toutes les routes Flask
        """
        @self.app.route('/api/status')
        def api_status():
            """Statut de l'agent et de ses composants"""
            try:
                return jsonify(self._get_status_info())

            except Exception as e:
                self.app_logger.error(f"Erreur API status: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/executions')
        def api_executions():
            """Dernières exécutions de politiques"""
            try:
                limit = request.args.get('limit', default=20, type=int)
                limit = max(1, min(limit, 200))
                return jsonify({'executions': self.store.get_recent_results(limit)})

            except Exception as e:
                self.app_logger.error(f"Erreur API executions: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/script-types')
        def api_script_types():
            """Types de scripts utilisables sur cet hôte"""
            return jsonify({'scriptTypes': self.script_service.get_supported_script_types()})

        @self.app.route('/api/discovery', methods=['POST'])
        def api_discovery():
            """Déclenche une session de découverte en arrière-plan"""
            if self.discovery is None:
                return jsonify({'success': False, 'message': 'Découverte désactivée'}), 400

            if self.discovery.is_running:
                return jsonify({
                    'success': False,
                    'message': 'Une découverte est déjà en cours'
                }), 400

            discovery_thread = threading.Thread(
                target=self.discovery.trigger_discovery,
                daemon=True,
                name="LocalDiscovery"
            )
            discovery_thread.start()

            return jsonify({'success': True, 'message': 'Découverte démarrée'}), 202

    def _get_status_info(self) -> dict:
        """
        Récupère les informations de statut

        Returns:
            dict: Informations de statut
        """
        status = {
            'hostname': socket.gethostname(),
            'platform': sys.platform,
            'status_timestamp': datetime.now().isoformat()
        }
        if self.status_provider is not None:
            status.update(self.status_provider())
        return status

    def start(self) -> bool:
        """
        Démarre le serveur Flask dans un thread dédié

        Returns:
            bool: True si le serveur a été démarré
        """
        web_config = self.config.get_web_config()
        host, port = web_config['host'], web_config['port']

        if host not in LOOPBACK_HOSTS:
            self.app_logger.warning(f"Adresse {host} refusée pour l'API locale - utilisation de 127.0.0.1")
            host = '127.0.0.1'

        self._thread = threading.Thread(
            target=self.run,
            args=(host, port),
            daemon=True,
            name="LocalStatusApi"
        )
        self._thread.start()
        self.app_logger.info(f"API locale démarrée - http://{host}:{port}")
        return True

    def run(self, host='127.0.0.1', port=18743):
        """
        Lance l'application Flask (bloquant)

        Args:
            host: Adresse d'écoute
            port: Port d'écoute
        """
        try:
            self.app.run(
                host=host,
                port=port,
                debug=False,
                threaded=True,
                use_reloader=False
            )

        except Exception as e:
            self.app_logger.error(f"Erreur dans l'API locale: {e}")
            self.app_logger.exception("Stack trace Flask:")
