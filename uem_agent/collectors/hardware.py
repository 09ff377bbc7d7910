"""
Collecteur matériel pour la découverte

Ce module collecte :
- Système (nom d'hôte, domaine, OS)
- Processeurs et mémoire
- Stockage (volumes montés)
- Cartes réseau
- Cartes graphiques, périphériques audio et USB
- Écrans et imprimantes
"""

import sys
import socket
import platform
from typing import Any, Dict, List

import psutil

from .base import BaseCollector


class HardwareCollector(BaseCollector):
    """
    Collecteur d'informations matériel

    psutil fournit les données portables ; les commandes système
    (PowerShell/CIM, lspci, lsusb, lpstat) complètent selon la plateforme.
    """

    category = 'hardware'

    def collect(self) -> Dict[str, Any]:
        """
        Collecte toutes les informations matériel

        Returns:
            dict: Instantané matériel camelCase
        """
        hardware = self._start_collection()

        hardware.update({
            'hostname': socket.gethostname(),
            'domainName': self._safe_execute(socket.getfqdn, "Erreur récupération domaine", None),
            'deviceType': self._device_type(),
            'operatingSystem': {
                'name': platform.system(),
                'version': platform.version(),
                'release': platform.release(),
                'architecture': platform.machine(),
            },
            'processors': self._collect_processors(),
            'memory': self._collect_memory(),
            'storage': self._collect_storage(),
            'networkAdapters': self._collect_network_adapters(),
            'graphicsAdapters': self._collect_graphics(),
            'audioDevices': self._collect_audio(),
            'usbDevices': self._collect_usb(),
            'monitors': self._collect_monitors(),
            'printers': self._collect_printers(),
        })

        self._end_collection()
        return hardware

    def _device_type(self) -> str:
        """Portable si une batterie est présente, poste de travail sinon"""
        if not hasattr(psutil, 'sensors_battery'):
            return 'Workstation'
        battery = self._safe_execute(psutil.sensors_battery, "Erreur récupération batterie")
        return 'Laptop' if battery is not None else 'Workstation'

    def _collect_processors(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json(
                "Get-CimInstance Win32_Processor | Select-Object Name,Manufacturer,NumberOfCores,"
                "NumberOfLogicalProcessors,MaxClockSpeed"
            )
            return [
                {
                    'name': self._clean_string(row.get('Name')),
                    'manufacturer': row.get('Manufacturer'),
                    'numberOfCores': row.get('NumberOfCores'),
                    'numberOfLogicalProcessors': row.get('NumberOfLogicalProcessors'),
                    'maxClockSpeedMhz': row.get('MaxClockSpeed'),
                }
                for row in rows
            ]

        freq = self._safe_execute(psutil.cpu_freq, "Erreur récupération fréquence CPU")
        return [{
            'name': self._cpu_model_name(),
            'architecture': platform.machine(),
            'numberOfCores': self._safe_execute(lambda: psutil.cpu_count(logical=False), "Erreur cores physiques"),
            'numberOfLogicalProcessors': self._safe_execute(lambda: psutil.cpu_count(logical=True), "Erreur cores logiques"),
            'maxClockSpeedMhz': round(freq.max, 1) if freq and freq.max else None,
        }]

    def _cpu_model_name(self) -> str:
        if sys.platform == "darwin":
            return self._execute_command("sysctl -n machdep.cpu.brand_string") or platform.processor()
        cpuinfo = self._read_file('/proc/cpuinfo') or ''
        for line in cpuinfo.splitlines():
            if line.startswith('model name'):
                return self._clean_string(line.split(':', 1)[1])
        return platform.processor()

    def _collect_memory(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json(
                "Get-CimInstance Win32_PhysicalMemory | Select-Object BankLabel,Capacity,Speed,Manufacturer"
            )
            return [
                {
                    'bankLabel': row.get('BankLabel'),
                    'capacityBytes': row.get('Capacity'),
                    'speedMhz': row.get('Speed'),
                    'manufacturer': self._clean_string(row.get('Manufacturer')),
                }
                for row in rows
            ]

        # Sans dmidecode (droits root), un module unique représente la mémoire totale
        total = self._safe_execute(lambda: psutil.virtual_memory().total, "Erreur récupération mémoire")
        return [{'bankLabel': 'System', 'capacityBytes': total}] if total else []

    def _collect_storage(self) -> List[Dict[str, Any]]:
        storage = []
        partitions = self._safe_execute(lambda: psutil.disk_partitions(all=False), "Erreur récupération partitions", [])
        for partition in partitions:
            usage = self._safe_execute(lambda: psutil.disk_usage(partition.mountpoint),
                                       f"Erreur usage {partition.mountpoint}")
            storage.append({
                'device': partition.device,
                'mountPoint': partition.mountpoint,
                'fileSystem': partition.fstype,
                'totalBytes': usage.total if usage else None,
                'freeBytes': usage.free if usage else None,
            })
        return storage

    def _collect_network_adapters(self) -> List[Dict[str, Any]]:
        adapters = []
        addresses = self._safe_execute(psutil.net_if_addrs, "Erreur récupération interfaces réseau", {})
        stats = self._safe_execute(psutil.net_if_stats, "Erreur récupération statistiques interfaces", {})

        for name, addrs in addresses.items():
            stat = stats.get(name)
            adapters.append({
                'name': name,
                'macAddress': next((a.address for a in addrs if a.family == psutil.AF_LINK), None),
                'ipAddresses': [a.address for a in addrs if a.family in (socket.AF_INET, socket.AF_INET6)],
                'isUp': bool(stat and stat.isup),
                'speedMbps': stat.speed if stat and stat.speed > 0 else None,
                'mtu': stat.mtu if stat else None,
            })
        return adapters

    def _collect_graphics(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json(
                "Get-CimInstance Win32_VideoController | Select-Object Name,DriverVersion,AdapterRAM"
            )
            return [{'name': row.get('Name'), 'driverVersion': row.get('DriverVersion'),
                     'adapterRamBytes': row.get('AdapterRAM')} for row in rows]
        return [{'name': line} for line in self._lspci_lines(('VGA', '3D controller'))]

    def _collect_audio(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json("Get-CimInstance Win32_SoundDevice | Select-Object Name,Manufacturer")
            return [{'name': row.get('Name'), 'manufacturer': row.get('Manufacturer')} for row in rows]
        return [{'name': line} for line in self._lspci_lines(('Audio',))]

    def _collect_usb(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json("Get-PnpDevice -PresentOnly -Class USB | Select-Object FriendlyName,InstanceId")
            return [{'name': row.get('FriendlyName'), 'deviceId': row.get('InstanceId')} for row in rows]
        if sys.platform == "darwin":
            return []

        output = self._execute_command("lsusb") or ''
        devices = []
        for line in output.splitlines():
            # Bus 001 Device 002: ID 8087:0024 Intel Corp. Hub
            head, _, name = line.partition(' ID ')
            if name:
                device_id, _, label = name.partition(' ')
                devices.append({'name': label.strip() or device_id, 'deviceId': device_id})
        return devices

    def _collect_monitors(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json("Get-CimInstance Win32_DesktopMonitor | Select-Object Name,ScreenWidth,ScreenHeight")
            return [{'name': row.get('Name'), 'screenWidth': row.get('ScreenWidth'),
                     'screenHeight': row.get('ScreenHeight')} for row in rows]
        return []

    def _collect_printers(self) -> List[Dict[str, Any]]:
        if sys.platform == "win32":
            rows = self._powershell_json("Get-CimInstance Win32_Printer | Select-Object Name,DriverName,Default")
            return [{'name': row.get('Name'), 'driverName': row.get('DriverName'),
                     'isDefault': bool(row.get('Default'))} for row in rows]

        output = self._execute_command("lpstat -p") or ''
        return [
            {'name': line.split()[1]}
            for line in output.splitlines()
            if line.startswith('printer ') and len(line.split()) > 1
        ]

    def _lspci_lines(self, classes) -> List[str]:
        if not sys.platform.startswith("linux"):
            return []
        output = self._execute_command("lspci") or ''
        lines = []
        for line in output.splitlines():
            _, _, description = line.partition(' ')
            if any(cls in description for cls in classes):
                lines.append(self._clean_string(description.split(': ', 1)[-1]))
        return lines
