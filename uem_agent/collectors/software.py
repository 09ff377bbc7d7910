"""
Collecteur logiciel pour la découverte

Ce module collecte :
- Les programmes installés (registre Windows, dpkg, rpm, system_profiler)
- Les services du système
- Un résumé des processus en cours
"""

import sys
import json
import platform
from typing import Any, Dict, List

import psutil

from .base import BaseCollector


UNINSTALL_KEYS = (
    r"HKLM:\Software\Microsoft\Windows\CurrentVersion\Uninstall\*",
    r"HKLM:\Software\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall\*",
)


class SoftwareCollector(BaseCollector):
    """
    Collecteur de logiciels installés et de services

    Ce collecteur utilise différentes méthodes selon la plateforme
    pour récupérer la liste des logiciels installés.
    """

    category = 'software'

    def collect(self) -> Dict[str, Any]:
        """
        Collecte les logiciels installés et les services

        Returns:
            dict: Instantané logiciel camelCase
        """
        software = self._start_collection()

        software['installedPrograms'] = self._cleanup_programs(self._collect_programs())
        software['services'] = self._collect_services()
        software['runningProcessCount'] = self._safe_execute(
            lambda: len(psutil.pids()), "Erreur récupération processus", None
        )
        software['systemConfiguration'] = {
            'platform': platform.platform(),
            'pythonVersion': platform.python_version(),
            'bootTime': self._safe_execute(psutil.boot_time, "Erreur récupération démarrage", None),
        }

        self.logger.info(f"Collecté {len(software['installedPrograms'])} programmes installés")
        self._end_collection()
        return software

    def _collect_programs(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            return self._collect_windows_programs()
        if sys.platform == "darwin":
            return self._collect_macos_programs()
        return self._collect_linux_dpkg() or self._collect_linux_rpm()

    def _collect_windows_programs(self) -> List[Dict[str, Any]]:
        programs = []
        for key in UNINSTALL_KEYS:
            rows = self._powershell_json(
                f"Get-ItemProperty '{key}' | Where-Object {{ $_.DisplayName }} | "
                "Select-Object DisplayName,DisplayVersion,Publisher,InstallDate"
            )
            for row in rows:
                programs.append({
                    'name': self._clean_string(row.get('DisplayName')),
                    'version': row.get('DisplayVersion'),
                    'publisher': self._clean_string(row.get('Publisher')) or None,
                    'installDate': row.get('InstallDate'),
                    'source': 'registry',
                })
        return programs

    def _collect_macos_programs(self) -> List[Dict[str, Any]]:
        output = self._execute_command("system_profiler SPApplicationsDataType -json", timeout=120)
        if not output:
            return []
        try:
            items = json.loads(output).get('SPApplicationsDataType', [])
        except ValueError:
            self.logger.debug("Sortie system_profiler illisible")
            return []
        return [
            {
                'name': self._clean_string(item.get('_name')),
                'version': item.get('version'),
                'publisher': item.get('obtained_from'),
                'source': 'system_profiler',
            }
            for item in items
        ]

    def _collect_linux_dpkg(self) -> List[Dict[str, Any]]:
        output = self._execute_command("dpkg-query -W -f='${Package}\\t${Version}\\t${Maintainer}\\n'")
        if not output:
            return []

        programs = []
        for line in output.splitlines():
            parts = line.split('\t')
            if len(parts) >= 2 and parts[0]:
                programs.append({
                    'name': parts[0],
                    'version': parts[1],
                    'publisher': parts[2] if len(parts) > 2 and parts[2] else None,
                    'source': 'dpkg',
                })
        return programs

    def _collect_linux_rpm(self) -> List[Dict[str, Any]]:
        output = self._execute_command("rpm -qa --queryformat '%{NAME}\\t%{VERSION}-%{RELEASE}\\t%{VENDOR}\\n'")
        if not output:
            return []

        programs = []
        for line in output.splitlines():
            parts = line.split('\t')
            if len(parts) >= 2 and parts[0]:
                programs.append({
                    'name': parts[0],
                    'version': parts[1],
                    'publisher': parts[2] if len(parts) > 2 and parts[2] != '(none)' else None,
                    'source': 'rpm',
                })
        return programs

    def _collect_services(self) -> List[Dict[str, Any]]:
        """
        Liste les services du système

        Returns:
            list: Services (nom, état, type de démarrage)
        """
        if sys.platform == "win32":
            services = []
            for service in self._safe_execute(lambda: list(psutil.win_service_iter()),
                                              "Erreur récupération services", []):
                info = self._safe_execute(service.as_dict, f"Erreur service {service.name()}")
                if info:
                    services.append({
                        'name': info.get('name'),
                        'displayName': info.get('display_name'),
                        'status': info.get('status'),
                        'startType': info.get('start_type'),
                    })
            return services

        if sys.platform == "darwin":
            output = self._execute_command("launchctl list") or ''
            return [
                {'name': parts[2], 'status': 'running' if parts[0] != '-' else 'stopped'}
                for parts in (line.split('\t') for line in output.splitlines()[1:])
                if len(parts) == 3
            ]

        output = self._execute_command(
            "systemctl list-units --type=service --all --no-legend --no-pager --plain"
        ) or ''
        services = []
        for line in output.splitlines():
            parts = line.split(None, 4)
            if len(parts) >= 4:
                services.append({
                    'name': parts[0],
                    'status': parts[3],
                    'displayName': parts[4] if len(parts) > 4 else None,
                })
        return services

    def _cleanup_programs(self, programs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Déduplique la liste des programmes (nom + version) et la trie par nom
        """
        seen = set()
        cleaned = []
        for program in programs:
            if not program.get('name'):
                continue
            key = (program['name'].lower(), program.get('version'))
            if key not in seen:
                seen.add(key)
                cleaned.append(program)

        cleaned.sort(key=lambda p: p['name'].lower())
        return cleaned
