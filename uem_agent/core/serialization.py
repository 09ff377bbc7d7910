"""
Sérialisation des échanges avec le plan de contrôle

Le plan de contrôle attend du JSON en camelCase et des dates ISO 8601 en UTC.
Les objets métier de l'agent sont des dataclasses en snake_case : ce module
fait la conversion dans les deux sens.
"""

import re
import json
import dataclasses
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


_FRACTION_RE = re.compile(r'\.(\d+)')


def utcnow() -> datetime:
    """Retourne l'instant courant en UTC (timezone-aware)"""
    return datetime.now(timezone.utc)


def to_camel(name: str) -> str:
    """
    Convertit un nom snake_case en camelCase

    Args:
        name: Nom en snake_case (ex: "execution_id")

    Returns:
        str: Nom en camelCase (ex: "executionId")
    """
    head, *tail = name.split('_')
    return head + ''.join(part[:1].upper() + part[1:] for part in tail)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Formate une date en ISO 8601 UTC avec le suffixe Z"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse une date ISO 8601 telle qu'émise par le plan de contrôle

    Gère le suffixe "Z" et les fractions de seconde à 7 chiffres.

    Returns:
        datetime: Date UTC timezone-aware, ou None si absente/invalide
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace('Z', '+00:00')
        text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_wire(value: Any, omit_none: bool = False) -> Any:
    """
    Convertit récursivement un objet en structure JSON camelCase

    Args:
        value: dataclass, dict, liste, Enum, datetime ou scalaire
        omit_none: Supprime les champs à None (dataclasses et dicts)

    Returns:
        Structure composée uniquement de types JSON
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        result = {}
        for field in dataclasses.fields(value):
            item = getattr(value, field.name)
            if item is None and omit_none:
                continue
            key = field.metadata.get('wire', to_camel(field.name))
            result[key] = to_wire(item, omit_none)
        return result
    if isinstance(value, dict):
        return {
            str(k): to_wire(v, omit_none)
            for k, v in value.items()
            if not (v is None and omit_none)
        }
    if isinstance(value, (list, tuple)):
        return [to_wire(item, omit_none) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def dumps(value: Any, omit_none: bool = False) -> str:
    """Sérialise un objet en JSON camelCase compact"""
    return json.dumps(to_wire(value, omit_none), ensure_ascii=False, separators=(',', ':'))


def wire_get(data: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    Lit un champ JSON sans tenir compte de la casse

    Le plan de contrôle peut émettre "executionId" ou "ExecutionId" selon
    l'endpoint ; les deux doivent être acceptés.

    Args:
        data: Dictionnaire JSON reçu
        key: Nom camelCase attendu
        default: Valeur si le champ est absent
    """
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if name.lower() == lowered:
            return value
    return default
