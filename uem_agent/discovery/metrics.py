"""
Calcul des métriques de découverte

Les trois instantanés peuvent être partiels ou réduits à un horodatage
(collecteur en échec) : tout comptage tolère les champs absents ou nuls.
"""

from typing import Any, Dict, Optional


HARDWARE_COLLECTIONS = (
    'processors', 'memory', 'storage', 'networkAdapters', 'graphicsAdapters',
    'audioDevices', 'usbDevices', 'monitors', 'printers',
)

SECURITY_SECTIONS = (
    'tpmInfo', 'bitLockerInfo', 'windowsDefenderInfo', 'firewallStatus',
    'uacSettings', 'securityPolicies', 'windowsUpdateSettings',
)

FIREWALL_PROFILES = ('domainProfileEnabled', 'privateProfileEnabled', 'publicProfileEnabled')


def _section(data: Optional[Dict[str, Any]], key: str) -> Dict[str, Any]:
    value = (data or {}).get(key)
    return value if isinstance(value, dict) else {}


def _count(data: Optional[Dict[str, Any]], key: str) -> int:
    value = (data or {}).get(key)
    return len(value) if isinstance(value, (list, tuple)) else 0


def calculate_metrics(hardware: Optional[Dict[str, Any]], software: Optional[Dict[str, Any]],
                      security: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Calcule le résumé de métriques d'une session

    Args:
        hardware: Instantané matériel
        software: Instantané logiciel
        security: Instantané sécurité

    Returns:
        dict: Métriques camelCase (compteurs à 0 et indicateurs à False par défaut)
    """
    security = security or {}
    firewall = _section(security, 'firewallStatus')

    return {
        'hardwareComponentCount': sum(_count(hardware, key) for key in HARDWARE_COLLECTIONS),
        'softwareItemCount': _count(software, 'installedPrograms'),
        'securityPolicyCount': sum(1 for key in SECURITY_SECTIONS if security.get(key) is not None),
        'networkAdapterCount': _count(hardware, 'networkAdapters'),
        'processorCount': _count(hardware, 'processors'),
        'memoryModuleCount': _count(hardware, 'memory'),
        'storageDeviceCount': _count(hardware, 'storage'),
        'serviceCount': _count(software, 'services'),
        'userAccountCount': _count(security, 'userAccounts'),
        'groupCount': _count(security, 'groupMemberships'),
        'encryptedVolumeCount': _count(_section(security, 'bitLockerInfo'), 'volumes'),
        'tpmEnabled': bool(_section(security, 'tpmInfo').get('isReady')),
        'windowsDefenderEnabled': bool(_section(security, 'windowsDefenderInfo').get('antivirusEnabled')),
        'firewallEnabled': any(bool(firewall.get(key)) for key in FIREWALL_PROFILES),
        'uacEnabled': bool(_section(security, 'uacSettings').get('uacEnabled')),
    }
