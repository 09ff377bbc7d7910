"""
Canal de commandes persistant

Le plan de contrôle expose un hub SignalR sur {base}/agent-hub?agentId=<id>
et y pousse la méthode command(executionId, commandType, payloadJson, ttl).
Le client parle le protocole de hub JSON sur le transport Server-Sent Events :

1. POST {hub}/negotiate : obtention du jeton de connexion
2. GET {hub}&id=<jeton> en text/event-stream : réception des trames
3. POST {hub}&id=<jeton> : poignée de main {"protocol":"json","version":1}
   puis pings périodiques

Chaque trame est un objet JSON terminé par le séparateur 0x1E. Chaque
commande reçue est placée dans une file locale non bornée consommée par
le distributeur.

La fin du flux n'est jamais fatale : listen() retourne et la boucle
principale se reconnecte après un délai. Les identifiants déjà reçus sont
mémorisés pour ne pas redistribuer une commande renvoyée après reconnexion.
"""

import json
import queue
import socket
import fnmatch
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from .. import __version__
from ..core.serialization import utcnow


SEEN_IDS_LIMIT = 1000
MAX_NEGOTIATE_REDIRECTS = 10

RECORD_SEPARATOR = '\x1e'
HANDSHAKE = json.dumps({'protocol': 'json', 'version': 1}) + RECORD_SEPARATOR
COMMAND_TARGET = 'command'

# Types de messages du protocole de hub
INVOCATION = 1
PING = 6
CLOSE = 7


class HubProtocolError(Exception):
    """Réponse du hub non conforme au protocole"""


@dataclass
class CommandMessage:
    """Commande poussée : (id, type, payloadJson, ttl)"""
    id: str
    type: str
    payload_json: str = '{}'
    ttl: int = 0
    received_at: datetime = field(default_factory=utcnow)

    def payload(self) -> Dict[str, Any]:
        """Payload décodé ({} si vide ou invalide)"""
        try:
            data = json.loads(self.payload_json or '{}')
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.ttl <= 0:
            return False
        now = now or utcnow()
        return (now - self.received_at).total_seconds() > self.ttl


def hostname_matches(hostname: str, pattern: Optional[str]) -> bool:
    """
    Vérifie un filtre de nom d'hôte (jokers * et ?, insensible à la casse)

    Un filtre vide accepte tous les hôtes.
    """
    if not pattern or pattern == '*':
        return True
    return fnmatch.fnmatchcase(hostname.lower(), pattern.lower())


def split_frames(data: str) -> List[Dict[str, Any]]:
    """
    Découpe un bloc de données en trames du protocole de hub

    Les morceaux vides ou illisibles sont ignorés.
    """
    frames = []
    for chunk in data.split(RECORD_SEPARATOR):
        if not chunk.strip():
            continue
        try:
            frame = json.loads(chunk)
        except ValueError:
            continue
        if isinstance(frame, dict):
            frames.append(frame)
    return frames


def parse_invocation(frame: Dict[str, Any]) -> Optional[CommandMessage]:
    """
    Construit une CommandMessage depuis une invocation "command"

    Les arguments sont (executionId, commandType, payloadJson, ttl). Le
    payload peut arriver déjà décodé en objet.
    """
    if frame.get('type') != INVOCATION:
        return None
    if str(frame.get('target') or '').lower() != COMMAND_TARGET:
        return None

    arguments = frame.get('arguments') or []
    if not isinstance(arguments, list) or len(arguments) < 2:
        return None

    command_id, command_type = arguments[0], arguments[1]
    if not command_id or not command_type:
        return None

    payload = arguments[2] if len(arguments) > 2 else None
    if payload is None:
        payload = '{}'
    elif not isinstance(payload, str):
        payload = json.dumps(payload)

    try:
        ttl = int(arguments[3]) if len(arguments) > 3 and arguments[3] is not None else 0
    except (TypeError, ValueError):
        ttl = 0

    return CommandMessage(id=str(command_id), type=str(command_type), payload_json=payload, ttl=ttl)


class CommandChannel:
    """
    Connexion persistante au hub du plan de contrôle et file locale des commandes
    """

    def __init__(self, config, logger, identity, session: Optional[requests.Session] = None,
                 hostname: Optional[str] = None,
                 inline_callback: Optional[Callable[[CommandMessage], None]] = None):
        """
        Args:
            config: Instance de AgentConfig
            logger: Instance de AgentLogger
            identity: Instance de AgentIdentity
            session: Session requests (injectée pour les tests)
            hostname: Nom d'hôte comparé aux filtres (hôte courant par défaut)
            inline_callback: Exécution directe historique, appelée en plus de la mise en file
        """
        self.logger = logger.get_logger()
        self.identity = identity
        self.session = session or requests.Session()
        self.hostname = hostname or socket.gethostname()
        self.inline_callback = inline_callback

        server_config = config.get_server_config()
        channel_config = config.get_channel_config()
        self.base_url = server_config['url']
        self.verify_ssl = server_config['verify_ssl']
        self.connect_timeout = server_config['timeout']
        self.read_timeout = channel_config['read_timeout']
        self.keepalive_interval = channel_config['keepalive_interval']

        self.queue: "queue.Queue[CommandMessage]" = queue.Queue()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self._response = None

        self.connected = False
        self.connection_id: Optional[str] = None
        self.connection_count = 0
        self.messages_received = 0
        self.last_connected: Optional[datetime] = None
        self.last_close_error: Optional[str] = None

    def hub_url(self) -> str:
        return f"{self.base_url}/agent-hub?agentId={quote(self.identity.agent_id or '', safe='')}"

    def _headers(self, token: Optional[str], content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {'User-Agent': f'UEMEndpointAgent/{__version__}'}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        if content_type:
            headers['Content-Type'] = content_type
        return headers

    def negotiate(self) -> Tuple[str, str, Optional[str]]:
        """
        Négocie une connexion avec le hub

        Suit les redirections (url + accessToken) renvoyées par un service
        intermédiaire.

        Returns:
            Tuple[str, str, Optional[str]]: (URL du hub, jeton de connexion, jeton d'accès)

        Raises:
            HubProtocolError: Négociation refusée ou réponse invalide
            requests.exceptions.RequestException: Erreur réseau
        """
        url = self.hub_url()
        token = self.identity.token

        for _ in range(MAX_NEGOTIATE_REDIRECTS):
            base, _, query = url.partition('?')
            negotiate_url = f"{base.rstrip('/')}/negotiate?{query + '&' if query else ''}negotiateVersion=1"

            response = self.session.post(negotiate_url, headers=self._headers(token), verify=self.verify_ssl,
                                         timeout=self.connect_timeout)
            if response.status_code == 401:
                self.identity.invalidate()
            if response.status_code != 200:
                raise HubProtocolError(f"Négociation refusée: HTTP {response.status_code}")

            try:
                body = response.json()
            except ValueError:
                raise HubProtocolError("Réponse de négociation non-JSON")
            if not isinstance(body, dict):
                raise HubProtocolError("Réponse de négociation invalide")

            if body.get('error'):
                raise HubProtocolError(f"Négociation refusée: {body['error']}")

            if body.get('url'):
                url = body['url']
                token = body.get('accessToken') or token
                self.logger.debug(f"Négociation redirigée vers {url}")
                continue

            transports = [t.get('transport') for t in body.get('availableTransports') or [] if isinstance(t, dict)]
            if transports and 'ServerSentEvents' not in transports:
                raise HubProtocolError(f"Transport ServerSentEvents indisponible ({', '.join(transports)})")

            connection_token = body.get('connectionToken') or body.get('connectionId')
            if not connection_token:
                raise HubProtocolError("Réponse de négociation sans jeton de connexion")

            self.connection_id = body.get('connectionId')
            return url, connection_token, token

        raise HubProtocolError("Trop de redirections de négociation")

    def listen(self, stop_event: threading.Event) -> int:
        """
        Ouvre une connexion au hub et traite le flux jusqu'à sa fin

        Les erreurs réseau et de protocole terminent l'écoute sans exception :
        l'appelant attend puis rappelle listen().

        Args:
            stop_event: Arrêt demandé de l'agent

        Returns:
            int: Nombre de commandes mises en file pendant cette connexion
        """
        enqueued = 0
        self.logger.info(f"Connexion au hub de commandes {self.hub_url()}")

        try:
            url, connection_token, token = self.negotiate()
        except (HubProtocolError, requests.exceptions.RequestException) as e:
            self.logger.warning(f"Canal de commandes refusé: {e}")
            return 0

        separator = '&' if '?' in url else '?'
        connection_url = f"{url}{separator}id={quote(connection_token, safe='')}"
        stream_headers = self._headers(token)
        stream_headers['Accept'] = 'text/event-stream'
        stream_done = threading.Event()

        try:
            with self.session.get(connection_url, headers=stream_headers, stream=True, verify=self.verify_ssl,
                                  timeout=(self.connect_timeout, self.read_timeout)) as response:
                if response.status_code == 401:
                    self.identity.invalidate()
                if response.status_code != 200:
                    self.logger.warning(f"Flux du hub refusé: HTTP {response.status_code}")
                    return 0

                self._response = response
                self._send(connection_url, token, HANDSHAKE)

                handshake_done = False
                for data in self._iter_events(response, stop_event):
                    for frame in split_frames(data):
                        if not handshake_done:
                            if frame.get('error'):
                                raise HubProtocolError(f"Poignée de main refusée: {frame['error']}")
                            handshake_done = True
                            self._on_connected(connection_url, token, stream_done)
                            continue

                        frame_type = frame.get('type')
                        if frame_type == CLOSE:
                            self.last_close_error = frame.get('error')
                            self.logger.info(f"Fermeture demandée par le hub: {frame.get('error') or 'sans erreur'}")
                            return enqueued
                        if frame_type == PING:
                            continue
                        if frame_type == INVOCATION:
                            enqueued += self._handle_invocation(frame)
                        else:
                            self.logger.debug(f"Trame de hub ignorée (type {frame_type})")

        except (HubProtocolError, requests.exceptions.RequestException) as e:
            self.logger.warning(f"Canal de commandes interrompu: {e}")
        finally:
            stream_done.set()
            self._response = None
            self.connected = False
            self._disconnect(connection_url, token)
            self.logger.info(f"Canal de commandes fermé ({enqueued} commande(s) reçue(s))")

        return enqueued

    def _iter_events(self, response, stop_event: threading.Event):
        """Produit le champ data de chaque événement Server-Sent Events"""
        data_lines: List[str] = []
        for line in response.iter_lines(decode_unicode=True):
            if stop_event.is_set():
                return
            if line is None:
                continue
            if isinstance(line, bytes):
                line = line.decode('utf-8', errors='replace')

            if line == '':
                if data_lines:
                    yield '\n'.join(data_lines)
                data_lines = []
            elif line.startswith(':'):
                continue
            else:
                name, _, value = line.partition(':')
                if name == 'data':
                    data_lines.append(value[1:] if value.startswith(' ') else value)

        if data_lines and not stop_event.is_set():
            yield '\n'.join(data_lines)

    def _on_connected(self, connection_url: str, token: Optional[str], stream_done: threading.Event):
        self.connected = True
        self.connection_count += 1
        self.last_connected = utcnow()
        self.logger.info(f"Canal de commandes connecté (connexion {self.connection_id})")

        if self.keepalive_interval > 0:
            thread = threading.Thread(target=self._keepalive_loop, args=(connection_url, token, stream_done),
                                      name="HubKeepAlive", daemon=True)
            thread.start()

    def _keepalive_loop(self, connection_url: str, token: Optional[str], stream_done: threading.Event):
        """Envoie un ping au hub à intervalle régulier tant que le flux est ouvert"""
        ping = json.dumps({'type': PING}) + RECORD_SEPARATOR
        while not stream_done.wait(self.keepalive_interval):
            try:
                self._send(connection_url, token, ping)
            except (HubProtocolError, requests.exceptions.RequestException) as e:
                self.logger.warning(f"Ping du hub en échec: {e}")
                self.close()
                return

    def _send(self, connection_url: str, token: Optional[str], payload: str):
        response = self.session.post(connection_url, data=payload.encode('utf-8'),
                                     headers=self._headers(token, 'text/plain;charset=UTF-8'),
                                     verify=self.verify_ssl, timeout=self.connect_timeout)
        if response.status_code != 200:
            raise HubProtocolError(f"Envoi au hub refusé: HTTP {response.status_code}")

    def _disconnect(self, connection_url: str, token: Optional[str]):
        """Libère la connexion côté serveur, sans garantie"""
        try:
            self.session.delete(connection_url, headers=self._headers(token), verify=self.verify_ssl,
                                timeout=self.connect_timeout)
        except requests.exceptions.RequestException as e:
            self.logger.debug(f"Libération de la connexion du hub impossible: {e}")

    def _handle_invocation(self, frame: Dict[str, Any]) -> int:
        message = parse_invocation(frame)
        if message is None:
            self.logger.debug(f"Invocation ignorée: {frame.get('target')}")
            return 0
        return 1 if self.accept(message) else 0

    def accept(self, message: CommandMessage) -> bool:
        """
        Met une commande en file si elle est nouvelle et destinée à cet hôte

        Returns:
            bool: True si la commande a été mise en file
        """
        with self._lock:
            if message.id in self._seen:
                self.logger.debug(f"Commande {message.id} déjà reçue, ignorée")
                return False
            self._seen[message.id] = None
            while len(self._seen) > SEEN_IDS_LIMIT:
                self._seen.popitem(last=False)

        self.logger.info(f"Commande reçue: id={message.id}, type={message.type}, ttl={message.ttl}")

        host_filter = message.payload().get('hostnameFilter')
        if not hostname_matches(self.hostname, host_filter):
            self.logger.info(f"Hôte {self.hostname} hors du filtre {host_filter}, commande ignorée")
            return False

        self.messages_received += 1
        self.queue.put(message)

        if self.inline_callback is not None:
            self.inline_callback(message)
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[CommandMessage]:
        """Retire la prochaine commande de la file (None après timeout)"""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        """Ferme le flux en cours pour débloquer listen()"""
        response = self._response
        if response is not None:
            try:
                response.close()
            except (OSError, requests.exceptions.RequestException):
                pass

    def get_status(self) -> Dict[str, Any]:
        return {
            'connected': self.connected,
            'connection_id': self.connection_id,
            'connection_count': self.connection_count,
            'messages_received': self.messages_received,
            'queued': self.queue.qsize(),
            'last_connected': self.last_connected.isoformat() if self.last_connected else None,
        }
