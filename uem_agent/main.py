"""
Point d'entrée principal de l'UEM Endpoint Agent

Ce module assemble tous les composants de l'agent et peut être exécuté
de différentes manières :
- En mode service (canal de commandes, politiques, découverte, heartbeat)
- En mode découverte unique
- En mode exécution ponctuelle d'un script local
"""

import sys
import json
import signal
import argparse
import threading
from concurrent.futures import ThreadPoolExecutor

from . import __version__
from .core.config import AgentConfig, create_default_config
from .core.logger import AgentLogger
from .core.store import LocalStore
from .core.identity import AgentIdentity
from .core.sender import ControlPlaneClient
from .core.scheduler import AgentScheduler
from .core.heartbeat import HeartbeatService
from .execution.models import ScriptExecutionRequest
from .execution.scripts import ScriptExecutionService
from .policy.engine import PolicyExecutionEngine
from .policy.poller import PolicyPoller, PolicyResultReporter
from .commands.channel import CommandChannel
from .commands.handler import CommandHandler, CommandDispatcher, LegacyInlineExecutor
from .discovery.orchestrator import DiscoveryOrchestrator
from .web.app import LocalStatusApp


class EndpointAgent:
    """
    Agent principal

    Cette classe construit les composants avec leurs dépendances explicites
    et gère leur cycle de vie.
    """

    def __init__(self, config_path=None):
        """
        Initialise l'agent

        Args:
            config_path: Chemin vers le fichier de configuration
        """
        # Configuration
        self.config = AgentConfig(config_path)

        # Logger
        self.logger = AgentLogger(self.config)
        self.app_logger = self.logger.get_logger()

        agent_config = self.config.get_agent_config()
        self.channel_config = self.config.get_channel_config()
        self.policy_config = self.config.get_policy_config()
        self.discovery_config = self.config.get_discovery_config()

        # Signal d'arrêt partagé par toutes les exécutions
        self.shutdown_event = threading.Event()
        self.executor = ThreadPoolExecutor(max_workers=agent_config['max_workers'], thread_name_prefix="AgentWorker")

        # Composants principaux
        self.store = LocalStore.from_config(self.config, self.logger)
        self.identity = AgentIdentity(self.config, self.logger)
        self.client = ControlPlaneClient(self.config, self.logger, self.identity)
        self.script_service = ScriptExecutionService(self.logger)

        self.engine = PolicyExecutionEngine(self.config, self.logger, self.store, self.script_service)
        self.reporter = PolicyResultReporter(self.config, self.logger, self.client, self.store)
        self.poller = PolicyPoller(
            self.config, self.logger, self.client, self.identity, self.store, self.engine,
            self.executor, cancel_event=self.shutdown_event, reporter=self.reporter
        )

        self.discovery = None
        if self.discovery_config['enabled']:
            self.discovery = DiscoveryOrchestrator(self.config, self.logger, self.identity, self.client, self.store)

        inline_callback = None
        if self.channel_config['legacy_inline_execution']:
            self.app_logger.warning("Exécution directe historique activée : les commandes poussées s'exécutent deux fois")
            inline_callback = LegacyInlineExecutor(
                self.logger, self.client, self.identity, self.script_service, self.executor, self.shutdown_event
            )
        self.channel = CommandChannel(self.config, self.logger, self.identity, inline_callback=inline_callback)
        self.handler = CommandHandler(self.config, self.logger, self.client, self.identity, self.store,
                                      self.script_service)
        self.dispatcher = CommandDispatcher(self.logger, self.channel, self.handler, self.executor,
                                            self.shutdown_event, discovery=self.discovery)

        self.heartbeat = HeartbeatService(self.config, self.logger, self.identity, self.client)
        self.scheduler = AgentScheduler(self.logger, self.executor)
        self.web_app = None
        self.channel_thread = None

        # État de l'agent
        self.running = False
        self._shutdown_lock = threading.Lock()

        self.app_logger.info(f"UEM Endpoint Agent {__version__} initialisé")

    def _schedule_jobs(self):
        agent_config = self.config.get_agent_config()
        self.scheduler.add_interval_job('policy', self.policy_config['poll_interval'], self.poller.run_cycle)
        self.scheduler.add_interval_job('heartbeat', agent_config['heartbeat_interval'],
                                        self.heartbeat.send_heartbeat)

        if self.discovery is not None and self.discovery_config['enable_periodic']:
            self.scheduler.add_interval_job('discovery', self.discovery_config['interval_hours'] * 3600,
                                            self.discovery.run_discovery)

    def start_command_channel(self):
        """
        Démarre la boucle de connexion du canal et le distributeur de commandes
        """
        if not self.channel_config['enabled']:
            self.app_logger.info("Canal de commandes désactivé dans la configuration")
            return

        self.dispatcher.start()
        self.channel_thread = threading.Thread(target=self._channel_loop, name="CommandChannel", daemon=True)
        self.channel_thread.start()

    def _channel_loop(self):
        """
        Boucle externe du canal : aucune exception ne l'interrompt

        Une fin de flux est traitée comme transitoire : attente fixe,
        revalidation de l'identité puis reconnexion.
        """
        reconnect_delay = self.channel_config['reconnect_delay']
        error_backoff = self.config.get_agent_config()['error_backoff']
        while not self.shutdown_event.is_set():
            delay = reconnect_delay
            try:
                if self.identity.ensure_registered():
                    self.channel.listen(self.shutdown_event)
                else:
                    self.app_logger.warning("Agent non enregistré, connexion du canal reportée")
            except Exception:
                self.app_logger.exception("Erreur dans la boucle du canal de commandes")
                delay = error_backoff

            if self.shutdown_event.is_set():
                break
            self.app_logger.info(f"Reconnexion du canal dans {delay}s")
            self.shutdown_event.wait(delay)

    def start_web_interface(self):
        """
        Démarre l'API locale de statut
        """
        if not self.config.get_web_config()['enabled']:
            self.app_logger.info("API locale désactivée dans la configuration")
            return

        try:
            self.web_app = LocalStatusApp(self.config, self.logger, self.store, self.script_service,
                                          discovery=self.discovery, status_provider=self.get_status)
            self.web_app.start()
        except Exception as e:
            self.app_logger.error(f"Erreur démarrage API locale: {e}")

    def run_service_mode(self):
        """
        Lance l'agent en mode service

        Ce mode démarre :
        - La reprise des exécutions interrompues
        - Le canal de commandes et son distributeur
        - Les tâches planifiées (politiques, heartbeat, découverte)
        - La découverte de démarrage
        - L'API locale (si activée)
        """
        self.app_logger.info("Démarrage de l'UEM Endpoint Agent en mode service")
        self.logger.log_system_info()
        self.logger.log_config_info(self.config)

        try:
            self._setup_signal_handlers()

            recovered = self.engine.recover_interrupted_commands()
            if recovered:
                self.app_logger.warning(f"{recovered} exécution(s) interrompue(s) finalisée(s) en échec")

            self.running = True
            self.start_command_channel()
            self._schedule_jobs()
            self.scheduler.start()
            self.start_web_interface()

            if self.discovery is not None:
                self.executor.submit(self.discovery.run_discovery)

            self.app_logger.info("UEM Endpoint Agent démarré avec succès")

            # Boucle principale - attendre l'arrêt
            while self.running and not self.shutdown_event.is_set():
                self.shutdown_event.wait(timeout=1.0)

        except KeyboardInterrupt:
            self.app_logger.info("Interruption clavier détectée")
        except Exception as e:
            self.app_logger.error(f"Erreur en mode service: {e}")
        finally:
            self.shutdown()

    def run_discovery_once(self, output_path=None) -> bool:
        """
        Exécute une session de découverte unique

        Args:
            output_path: Fichier où écrire la session (optionnel)
        """
        if self.discovery is None:
            self.discovery = DiscoveryOrchestrator(self.config, self.logger, self.identity, self.client, self.store)

        success = self.discovery.run_discovery()
        if output_path and self.discovery.last_session:
            with open(output_path, 'w', encoding='utf-8') as f:
                json.dump(self.discovery.last_session, f, indent=2, ensure_ascii=False)
        return success

    def run_local_script(self, script_type: str, script_path: str, timeout: int = 300):
        """
        Exécute un script local via le service d'exécution (diagnostic)
        """
        with open(script_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.script_service.execute(
            ScriptExecutionRequest(script_type=script_type, script_content=content, timeout_seconds=timeout),
            self.shutdown_event
        )

    def _setup_signal_handlers(self):
        """
        Configure les gestionnaires de signaux pour l'arrêt propre
        """
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.app_logger.info(f"Signal {signal_name} reçu - Arrêt en cours...")
            self.running = False
            self.shutdown_event.set()

        if hasattr(signal, 'SIGTERM'):
            signal.signal(signal.SIGTERM, signal_handler)

        if hasattr(signal, 'SIGINT'):
            signal.signal(signal.SIGINT, signal_handler)

        # Windows
        if hasattr(signal, 'SIGBREAK'):
            signal.signal(signal.SIGBREAK, signal_handler)

    def shutdown(self):
        """
        Arrête proprement tous les composants de l'agent

        Le signal d'arrêt annule les exécutions en cours : leurs arbres de
        processus sont tués.
        """
        with self._shutdown_lock:
            if self.executor is None:
                return
            executor, self.executor = self.executor, None

        self.app_logger.info("Arrêt de l'UEM Endpoint Agent...")
        self.running = False
        self.shutdown_event.set()

        self.channel.close()
        self.scheduler.stop()
        self.dispatcher.join()
        if self.channel_thread is not None:
            self.channel_thread.join(timeout=5.0)

        executor.shutdown(wait=True)
        self.store.close()

        self.app_logger.info("UEM Endpoint Agent arrêté proprement")

    def get_status(self) -> dict:
        """
        Retourne le statut actuel de l'agent

        Returns:
            dict: Statut de tous les composants
        """
        return {
            'running': self.running,
            'agent_version': __version__,
            'agent_id': self.identity.agent_id,
            'registered': self.identity.is_registered(),
            'components': {
                'scheduler': self.scheduler.get_status(),
                'channel': self.channel.get_status(),
                'policies': {'active_executions': self.poller.active_executions()},
                'discovery': self.discovery.get_status() if self.discovery else None,
                'sender': self.client.get_stats(),
            },
            'config': {
                'file': self.config.config_file,
                'valid': self.config.validate()
            }
        }


def main():
    """
    Point d'entrée principal avec gestion des arguments de ligne de commande
    """
    parser = argparse.ArgumentParser(
        description='UEM Endpoint Agent - Exécution à distance et découverte du poste'
    )

    parser.add_argument('--config', '-c', type=str, help='Chemin vers le fichier de configuration')

    parser.add_argument(
        '--mode', '-m',
        choices=['service', 'discover', 'run-script'],
        default='service',
        help='Mode de fonctionnement de l\'agent'
    )

    parser.add_argument('--create-config', action='store_true', help='Crée un fichier de configuration par défaut')
    parser.add_argument('--validate-config', action='store_true', help='Valide la configuration actuelle')
    parser.add_argument('--status', action='store_true', help='Affiche le statut de l\'agent')
    parser.add_argument('--output', '-o', type=str, help='Fichier de sortie de la session (mode discover)')
    parser.add_argument('--type', dest='script_type', default='shell', help='Type de script (mode run-script)')
    parser.add_argument('--file', dest='script_file', help='Script à exécuter (mode run-script)')
    parser.add_argument('--timeout', type=int, default=300, help='Timeout du script en secondes')

    args = parser.parse_args()

    # Créer une configuration par défaut
    if args.create_config:
        if not args.config:
            print("❌ --config est requis avec --create-config")
            return 1
        try:
            create_default_config(args.config)
            print(f"✅ Configuration par défaut créée: {args.config}")
            return 0
        except OSError as e:
            print(f"❌ Erreur création configuration: {e}")
            return 1

    # Créer l'agent
    try:
        agent = EndpointAgent(args.config)
    except Exception as e:
        print(f"❌ Erreur initialisation agent: {e}")
        return 1

    # Valider la configuration
    if args.validate_config:
        if agent.config.validate():
            print("✅ Configuration valide")
            return 0
        print("❌ Configuration invalide")
        return 1

    # Afficher le statut
    if args.status:
        status = agent.get_status()
        print(f"Agent Version: {status['agent_version']}")
        print(f"Agent ID: {status['agent_id'] or '-'}")
        print(f"Config File: {status['config']['file']}")
        print(f"Config Valid: {'✅' if status['config']['valid'] else '❌'}")
        for result in agent.store.get_recent_results(5):
            print(f"  {result.get('executionId')}: {result.get('finalStatus')} "
                  f"({'reported' if result.get('reported') else 'pending'})")
        return 0

    try:
        if args.mode == 'service':
            agent.run_service_mode()

        elif args.mode == 'discover':
            if agent.run_discovery_once(args.output):
                print("✅ Découverte transmise")
            else:
                print("❌ Découverte non transmise")
                return 1

        elif args.mode == 'run-script':
            if not args.script_file:
                print("❌ --file est requis en mode run-script")
                return 1
            result = agent.run_local_script(args.script_type, args.script_file, args.timeout)
            if result.output:
                print(result.output)
            if result.error:
                print(result.error, file=sys.stderr)
            return 0 if result.success else 1

        return 0

    except KeyboardInterrupt:
        print("\n🛑 Arrêt demandé par l'utilisateur")
        return 0
    except Exception as e:
        print(f"❌ Erreur: {e}")
        return 1
    finally:
        if args.mode != 'service':
            agent.shutdown()


if __name__ == '__main__':
    sys.exit(main())
