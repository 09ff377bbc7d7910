"""
Collecteur sécurité pour la découverte

Ce module collecte :
- Comptes utilisateurs et groupes locaux
- État du pare-feu par profil
- TPM, BitLocker, Windows Defender, UAC (Windows)
- Politiques de mots de passe et paramètres Windows Update (Windows)

Une information indisponible sur la plateforme est laissée à None : elle
est omise du document transmis et comptée comme absente dans les métriques.
"""

import os
import sys
from typing import Any, Dict, List, Optional

from .base import BaseCollector


FIREWALL_PROFILES = ('domainProfileEnabled', 'privateProfileEnabled', 'publicProfileEnabled')


class SecurityCollector(BaseCollector):
    """
    Collecteur d'informations de sécurité
    """

    category = 'security'

    def collect(self) -> Dict[str, Any]:
        """
        Collecte l'état de sécurité du poste

        Returns:
            dict: Instantané sécurité camelCase
        """
        security = self._start_collection()

        if sys.platform == "win32":
            security.update(self._collect_windows())
        else:
            security.update(self._collect_unix())

        self._end_collection()
        return security

    # Windows

    def _collect_windows(self) -> Dict[str, Any]:
        return {
            'userAccounts': [
                {'name': row.get('Name'), 'enabled': bool(row.get('Enabled')), 'description': row.get('Description')}
                for row in self._powershell_json("Get-LocalUser | Select-Object Name,Enabled,Description")
            ],
            'groupMemberships': [
                {'name': row.get('Name'), 'description': row.get('Description')}
                for row in self._powershell_json("Get-LocalGroup | Select-Object Name,Description")
            ],
            'firewallStatus': self._windows_firewall(),
            'tpmInfo': self._windows_tpm(),
            'bitLockerInfo': self._windows_bitlocker(),
            'windowsDefenderInfo': self._windows_defender(),
            'uacSettings': self._windows_uac(),
            'securityPolicies': self._windows_account_policies(),
            'windowsUpdateSettings': self._windows_update_settings(),
        }

    def _windows_firewall(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json("Get-NetFirewallProfile | Select-Object Name,Enabled")
        if not rows:
            return None
        status = {key: False for key in FIREWALL_PROFILES}
        for row in rows:
            key = f"{str(row.get('Name', '')).lower()}ProfileEnabled"
            if key in status:
                status[key] = bool(row.get('Enabled'))
        return status

    def _windows_tpm(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json("Get-Tpm | Select-Object TpmPresent,TpmReady,ManufacturerVersion")
        if not rows:
            return None
        tpm = rows[0]
        return {
            'isPresent': bool(tpm.get('TpmPresent')),
            'isReady': bool(tpm.get('TpmReady')),
            'manufacturerVersion': tpm.get('ManufacturerVersion'),
        }

    def _windows_bitlocker(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json(
            "Get-BitLockerVolume | Select-Object MountPoint,VolumeStatus,ProtectionStatus,EncryptionPercentage"
        )
        if not rows:
            return None
        # Seuls les volumes effectivement chiffrés sont listés
        volumes = [
            {
                'mountPoint': row.get('MountPoint'),
                'volumeStatus': str(row.get('VolumeStatus')),
                'protectionStatus': str(row.get('ProtectionStatus')),
                'encryptionPercentage': row.get('EncryptionPercentage'),
            }
            for row in rows
            if row.get('EncryptionPercentage')
        ]
        return {'volumes': volumes}

    def _windows_defender(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json(
            "Get-MpComputerStatus | Select-Object AntivirusEnabled,RealTimeProtectionEnabled,AntivirusSignatureVersion"
        )
        if not rows:
            return None
        status = rows[0]
        return {
            'antivirusEnabled': bool(status.get('AntivirusEnabled')),
            'realTimeProtectionEnabled': bool(status.get('RealTimeProtectionEnabled')),
            'signatureVersion': status.get('AntivirusSignatureVersion'),
        }

    def _windows_uac(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json(
            r"Get-ItemProperty 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System' | "
            "Select-Object EnableLUA,ConsentPromptBehaviorAdmin"
        )
        if not rows:
            return None
        return {
            'uacEnabled': rows[0].get('EnableLUA') == 1,
            'consentPromptBehaviorAdmin': rows[0].get('ConsentPromptBehaviorAdmin'),
        }

    def _windows_account_policies(self) -> Optional[Dict[str, Any]]:
        output = self._execute_command("net accounts")
        if not output:
            return None
        policies = {}
        for line in output.splitlines():
            name, sep, value = line.partition(':')
            if sep and value.strip():
                policies[name.strip()] = value.strip()
        return {'accountPolicies': policies}

    def _windows_update_settings(self) -> Optional[Dict[str, Any]]:
        rows = self._powershell_json(
            r"Get-ItemProperty 'HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU' | "
            "Select-Object NoAutoUpdate,AUOptions"
        )
        if not rows:
            return None
        return {
            'automaticUpdatesEnabled': rows[0].get('NoAutoUpdate') != 1,
            'auOptions': rows[0].get('AUOptions'),
        }

    # Linux / macOS

    def _collect_unix(self) -> Dict[str, Any]:
        return {
            'userAccounts': self._safe_execute(self._unix_users, "Erreur récupération comptes", []),
            'groupMemberships': self._safe_execute(self._unix_groups, "Erreur récupération groupes", []),
            'firewallStatus': self._unix_firewall(),
            'tpmInfo': self._unix_tpm(),
            'encryptionStatus': self._unix_encryption(),
        }

    def _unix_users(self) -> List[Dict[str, Any]]:
        import pwd

        return [
            {
                'name': entry.pw_name,
                'uid': entry.pw_uid,
                'shell': entry.pw_shell,
                # Comptes de service sans shell interactif
                'enabled': not entry.pw_shell.endswith(('nologin', 'false')),
            }
            for entry in pwd.getpwall()
        ]

    def _unix_groups(self) -> List[Dict[str, Any]]:
        import grp

        return [{'name': entry.gr_name, 'gid': entry.gr_gid, 'members': list(entry.gr_mem)} for entry in grp.getgrall()]

    def _unix_firewall(self) -> Optional[Dict[str, Any]]:
        if sys.platform == "darwin":
            output = self._execute_command("/usr/libexec/ApplicationFirewall/socketfilterfw --getglobalstate")
            if output is None:
                return None
            enabled = 'enabled' in output.lower()
            return {'provider': 'socketfilterfw', 'publicProfileEnabled': enabled}

        output = self._execute_command("ufw status")
        if output is not None:
            return {'provider': 'ufw', 'publicProfileEnabled': 'status: active' in output.lower()}

        output = self._execute_command("firewall-cmd --state")
        if output is not None:
            return {'provider': 'firewalld', 'publicProfileEnabled': output.strip() == 'running'}
        return None

    def _unix_tpm(self) -> Optional[Dict[str, Any]]:
        if not sys.platform.startswith("linux"):
            return None
        present = os.path.exists('/sys/class/tpm/tpm0')
        return {
            'isPresent': present,
            'isReady': present and os.path.exists('/dev/tpm0'),
            'version': self._read_file('/sys/class/tpm/tpm0/tpm_version_major') if present else None,
        }

    def _unix_encryption(self) -> Optional[Dict[str, Any]]:
        if not sys.platform.startswith("linux"):
            return None
        output = self._execute_command("lsblk -rno NAME,TYPE")
        if output is None:
            return None
        encrypted = [line.split()[0] for line in output.splitlines() if line.endswith(' crypt')]
        return {'encryptedVolumes': encrypted}
