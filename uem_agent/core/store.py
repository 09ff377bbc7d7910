"""
Stockage local durable de l'agent (SQLite)

Ce module conserve tout ce qui doit survivre à un redémarrage ou à une
coupure réseau :
- Commandes de politique reçues et leur état (pending, running, completed)
- Résultats d'exécution de politique et leur état de remontée
- Résultats de commandes génériques non encore postés
- Résultats partiels et sessions de découverte
- Journal d'audit

Les enregistrements sont des documents JSON indexés par identifiant
d'exécution ou de session ; la mise à jour est idempotente par clé.
"""

import os
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .serialization import parse_datetime, utcnow


SCHEMA = """
CREATE TABLE IF NOT EXISTS policy_commands (
    execution_id TEXT PRIMARY KEY,
    policy_id TEXT,
    policy_name TEXT,
    command_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    issued_at TEXT,
    expires_at TEXT,
    received_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS policy_execution_results (
    execution_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    final_status TEXT,
    result_json TEXT NOT NULL,
    reported INTEGER NOT NULL DEFAULT 0,
    report_attempts INTEGER NOT NULL DEFAULT 0,
    last_report_attempt TEXT,
    reported_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS command_results (
    command_id TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL,
    sent INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    sent_at TEXT
);

CREATE TABLE IF NOT EXISTS discovery_results (
    session_id TEXT NOT NULL,
    category TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    succeeded INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    PRIMARY KEY (session_id, category)
);

CREATE TABLE IF NOT EXISTS discovery_sessions (
    session_id TEXT PRIMARY KEY,
    agent_id TEXT,
    payload_json TEXT NOT NULL,
    transmitted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    transmitted_at TEXT
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    reference_id TEXT,
    detail_json TEXT,
    created_at TEXT NOT NULL
);
"""

FINAL_STATUSES = ('completed', 'failed')


def _ts(value: Optional[datetime] = None) -> str:
    """Horodatage UTC à largeur fixe, comparable lexicographiquement"""
    value = value or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


class LocalStore:
    """
    Base SQLite locale partagée par les composants de l'agent

    Une seule connexion protégée par un verrou ; aucun appel réseau ni
    attente de processus n'est fait en tenant ce verrou.
    """

    def __init__(self, database: str, logger):
        """
        Args:
            database: Chemin du fichier SQLite (":memory:" accepté)
            logger: Instance de AgentLogger
        """
        self.database = database
        self.logger = logger.get_logger()
        self._lock = threading.Lock()

        if database != ':memory:':
            db_dir = os.path.dirname(os.path.abspath(database))
            os.makedirs(db_dir, exist_ok=True)

        self._conn = sqlite3.connect(database, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if database != ':memory:':
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        self.logger.info(f"Stockage local initialisé: {database}")

    @classmethod
    def from_config(cls, config, logger) -> 'LocalStore':
        return cls(config.get('storage', 'database'), logger)

    def close(self):
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock, self._conn:
            return self._conn.execute(sql, params)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Commandes de politique

    def store_pending_command(self, execution_id: str, command: Dict[str, Any]) -> bool:
        """
        Enregistre une commande de politique reçue

        Une commande déjà connue (même executionId) n'est pas modifiée.

        Args:
            execution_id: Identifiant unique d'exécution
            command: Commande au format JSON du plan de contrôle

        Returns:
            bool: True si la commande est nouvelle
        """
        issued_at = parse_datetime(command.get('issuedAt'))
        expires_at = parse_datetime(command.get('expiresAt'))
        cursor = self._execute(
            """
            INSERT OR IGNORE INTO policy_commands
                (execution_id, policy_id, policy_name, command_json, status,
                 issued_at, expires_at, received_at)
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (
                execution_id,
                str(command.get('policyId', '')),
                command.get('policyName', ''),
                json.dumps(command),
                _ts(issued_at) if issued_at else None,
                _ts(expires_at) if expires_at else None,
                _ts(),
            )
        )
        created = cursor.rowcount == 1
        if created:
            self.logger.info(f"Commande de politique {execution_id} enregistrée")
        else:
            self.logger.debug(f"Commande de politique {execution_id} déjà connue")
        return created

    def get_pending_commands(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Retourne les commandes en attente et non expirées, par date d'émission

        Les commandes expirées sont marquées "expired" au passage.
        """
        now_ts = _ts(now)
        rows = self._query(
            "SELECT execution_id, command_json, expires_at FROM policy_commands "
            "WHERE status = 'pending' ORDER BY issued_at, received_at"
        )

        commands = []
        for row in rows:
            if row['expires_at'] and row['expires_at'] <= now_ts:
                self.logger.warning(f"Commande de politique {row['execution_id']} expirée, ignorée")
                self.set_command_status(row['execution_id'], 'expired', 'Command expired before execution')
                continue
            try:
                commands.append(json.loads(row['command_json']))
            except ValueError:
                self.logger.error(f"Commande {row['execution_id']} illisible, marquée en échec")
                self.set_command_status(row['execution_id'], 'failed', 'Failed to deserialize command data')
        return commands

    def get_commands_by_status(self, status: str) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT command_json FROM policy_commands WHERE status = ? ORDER BY received_at", (status,)
        )
        return [json.loads(row['command_json']) for row in rows]

    def get_command_status(self, execution_id: str) -> Optional[str]:
        rows = self._query("SELECT status FROM policy_commands WHERE execution_id = ?", (execution_id,))
        return rows[0]['status'] if rows else None

    def set_command_status(self, execution_id: str, status: str, error_message: Optional[str] = None):
        completed_at = _ts() if status in ('completed', 'failed', 'expired') else None
        self._execute(
            "UPDATE policy_commands SET status = ?, error_message = COALESCE(?, error_message), "
            "completed_at = COALESCE(?, completed_at) WHERE execution_id = ?",
            (status, error_message, completed_at, execution_id)
        )

    def mark_command_running(self, execution_id: str) -> bool:
        """
        Passe une commande de pending à running

        Returns:
            bool: False si la commande n'était plus en attente (déjà prise)
        """
        cursor = self._execute(
            "UPDATE policy_commands SET status = 'running' WHERE execution_id = ? AND status = 'pending'",
            (execution_id,)
        )
        return cursor.rowcount == 1

    def mark_command_completed(self, execution_id: str):
        self.set_command_status(execution_id, 'completed')

    # Résultats d'exécution de politique

    def store_execution_result(self, execution_id: str, result: Dict[str, Any]):
        """
        Insère ou remplace le résultat d'une exécution (idempotent par executionId)

        L'état de remontée n'est pas réinitialisé par une mise à jour.
        """
        now = _ts()
        self._execute(
            """
            INSERT INTO policy_execution_results
                (execution_id, status, final_status, result_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status,
                final_status = excluded.final_status,
                result_json = excluded.result_json,
                updated_at = excluded.updated_at
            """,
            (execution_id, result.get('status', ''), result.get('finalStatus'), json.dumps(result), now, now)
        )

    def get_execution_result(self, execution_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT result_json FROM policy_execution_results WHERE execution_id = ?", (execution_id,)
        )
        return json.loads(rows[0]['result_json']) if rows else None

    def count_execution_results(self, execution_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS n FROM policy_execution_results WHERE execution_id = ?", (execution_id,)
        )
        return rows[0]['n']

    def get_unreported_results(self, max_attempts: int = 0, backoff_seconds: int = 0,
                               now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Retourne les résultats finalisés pas encore acceptés par le serveur

        Args:
            max_attempts: Nombre maximum de tentatives (0 = illimité)
            backoff_seconds: Délai minimum entre deux tentatives pour un résultat
            now: Instant de référence (tests)
        """
        now = now or utcnow()
        params: List[Any] = list(FINAL_STATUSES)
        sql = (
            "SELECT result_json FROM policy_execution_results "
            "WHERE reported = 0 AND status IN (?, ?)"
        )
        if max_attempts > 0:
            sql += " AND report_attempts < ?"
            params.append(max_attempts)
        if backoff_seconds > 0:
            sql += " AND (last_report_attempt IS NULL OR last_report_attempt <= ?)"
            params.append(_ts(now - timedelta(seconds=backoff_seconds)))
        sql += " ORDER BY updated_at"

        return [json.loads(row['result_json']) for row in self._query(sql, tuple(params))]

    def record_report_attempt(self, execution_id: str):
        self._execute(
            "UPDATE policy_execution_results SET report_attempts = report_attempts + 1, "
            "last_report_attempt = ? WHERE execution_id = ?",
            (_ts(), execution_id)
        )

    def mark_result_reported(self, execution_id: str):
        self._execute(
            "UPDATE policy_execution_results SET reported = 1, reported_at = ? WHERE execution_id = ?",
            (_ts(), execution_id)
        )

    def is_result_reported(self, execution_id: str) -> bool:
        rows = self._query(
            "SELECT reported FROM policy_execution_results WHERE execution_id = ?", (execution_id,)
        )
        return bool(rows and rows[0]['reported'])

    def get_recent_results(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT result_json, reported FROM policy_execution_results ORDER BY updated_at DESC LIMIT ?",
            (limit,)
        )
        results = []
        for row in rows:
            result = json.loads(row['result_json'])
            result['reported'] = bool(row['reported'])
            results.append(result)
        return results

    # Résultats de commandes génériques

    def store_command_result(self, command_id: str, payload: Dict[str, Any]):
        self._execute(
            "INSERT OR REPLACE INTO command_results (command_id, payload_json, sent, attempts, created_at) "
            "VALUES (?, ?, 0, 0, ?)",
            (command_id, json.dumps(payload), _ts())
        )

    def get_unsent_command_results(self, max_attempts: int = 0) -> List[Dict[str, Any]]:
        sql = "SELECT payload_json FROM command_results WHERE sent = 0"
        params: tuple = ()
        if max_attempts > 0:
            sql += " AND attempts < ?"
            params = (max_attempts,)
        return [json.loads(row['payload_json']) for row in self._query(sql + " ORDER BY created_at", params)]

    def record_command_result_attempt(self, command_id: str):
        self._execute("UPDATE command_results SET attempts = attempts + 1 WHERE command_id = ?", (command_id,))

    def mark_command_result_sent(self, command_id: str):
        self._execute(
            "UPDATE command_results SET sent = 1, sent_at = ? WHERE command_id = ?", (_ts(), command_id)
        )

    # Découverte

    def store_discovery_component(self, session_id: str, category: str, payload: Dict[str, Any],
                                  succeeded: bool = True):
        self._execute(
            "INSERT OR REPLACE INTO discovery_results (session_id, category, payload_json, succeeded, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (session_id, category, json.dumps(payload), 1 if succeeded else 0, _ts())
        )

    def get_discovery_components(self, session_id: str) -> Dict[str, Dict[str, Any]]:
        rows = self._query(
            "SELECT category, payload_json FROM discovery_results WHERE session_id = ?", (session_id,)
        )
        return {row['category']: json.loads(row['payload_json']) for row in rows}

    def store_discovery_session(self, session_id: str, agent_id: Optional[str], payload: Dict[str, Any]):
        self._execute(
            "INSERT OR REPLACE INTO discovery_sessions (session_id, agent_id, payload_json, transmitted, created_at) "
            "VALUES (?, ?, ?, 0, ?)",
            (session_id, agent_id, json.dumps(payload), _ts())
        )

    def mark_session_transmitted(self, session_id: str):
        self._execute(
            "UPDATE discovery_sessions SET transmitted = 1, transmitted_at = ? WHERE session_id = ?",
            (_ts(), session_id)
        )

    def is_session_transmitted(self, session_id: str) -> bool:
        rows = self._query("SELECT transmitted FROM discovery_sessions WHERE session_id = ?", (session_id,))
        return bool(rows and rows[0]['transmitted'])

    # Audit

    def record_audit_event(self, event_type: str, reference_id: Optional[str] = None,
                           detail: Optional[Dict[str, Any]] = None):
        self._execute(
            "INSERT INTO audit_events (event_type, reference_id, detail_json, created_at) VALUES (?, ?, ?, ?)",
            (event_type, reference_id, json.dumps(detail or {}), _ts())
        )

    def get_audit_events(self, event_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if event_type:
            rows = self._query(
                "SELECT * FROM audit_events WHERE event_type = ? ORDER BY id DESC LIMIT ?", (event_type, limit)
            )
        else:
            rows = self._query("SELECT * FROM audit_events ORDER BY id DESC LIMIT ?", (limit,))
        return [
            {
                'event_type': row['event_type'],
                'reference_id': row['reference_id'],
                'detail': json.loads(row['detail_json'] or '{}'),
                'created_at': row['created_at'],
            }
            for row in rows
        ]
