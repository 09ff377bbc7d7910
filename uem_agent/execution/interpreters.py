"""
Détection des interpréteurs disponibles selon la plateforme

Chaque plateforme fournit sa stratégie de recherche (InterpreterLocator).
Le service de scripts ne connaît que l'interface, ce qui permet de
substituer un localisateur factice dans les tests.
"""

import os
import sys
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional


class InterpreterLocator(ABC):
    """
    Stratégie de localisation des interpréteurs pour une plateforme
    """

    #: Candidats Python testés dans l'ordre
    python_candidates: List[str] = []

    def __init__(self,
                 which: Callable[[str], Optional[str]] = shutil.which,
                 exists: Callable[[str], bool] = os.path.isfile):
        self._which = which
        self._exists = exists
        self._python_lock = threading.Lock()
        self._python_cache: Optional[str] = None
        self._python_checked = False

    @property
    @abstractmethod
    def is_windows(self) -> bool:
        """Indique si la plateforme est Windows"""

    @abstractmethod
    def find_powershell(self) -> Optional[str]:
        """Retourne l'exécutable PowerShell utilisable, ou None"""

    @abstractmethod
    def find_bash(self) -> Optional[str]:
        """Retourne un bash utilisable, ou None"""

    def find_cmd(self) -> Optional[str]:
        """Retourne l'interpréteur de commandes Windows, ou None"""
        return None

    def find_python(self) -> Optional[str]:
        """
        Retourne le premier interpréteur Python qui répond à --version

        Le résultat est mis en cache : la vérification lance des processus.
        """
        with self._python_lock:
            if not self._python_checked:
                self._python_cache = self._detect_python()
                self._python_checked = True
            return self._python_cache

    def _detect_python(self) -> Optional[str]:
        for candidate in self.python_candidates:
            path = self._which(candidate)
            if path and self._verify(path, '--version'):
                return path
        return None

    def _verify(self, executable: str, *args: str) -> bool:
        """Lance l'exécutable avec les arguments donnés et vérifie le code retour"""
        try:
            completed = subprocess.run(
                [executable] + list(args),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5
            )
            return completed.returncode == 0
        except (OSError, subprocess.SubprocessError):
            return False

    def _first_existing(self, paths: List[str]) -> Optional[str]:
        return next((path for path in paths if self._exists(path)), None)


class WindowsInterpreterLocator(InterpreterLocator):
    """Localisation des interpréteurs sous Windows"""

    python_candidates = ['python.exe', 'python3.exe', 'py.exe']

    # Installations bash connues, par ordre de préférence
    bash_paths = [
        r"C:\Windows\System32\bash.exe",           # WSL
        r"C:\Program Files\Git\bin\bash.exe",      # Git Bash
        r"C:\Program Files (x86)\Git\bin\bash.exe",
        r"C:\msys64\usr\bin\bash.exe",             # MSYS2
        r"C:\cygwin64\bin\bash.exe",               # Cygwin
        r"C:\cygwin\bin\bash.exe",
    ]

    @property
    def is_windows(self) -> bool:
        return True

    def find_powershell(self) -> Optional[str]:
        return self._which('powershell.exe') or 'powershell.exe'

    def find_bash(self) -> Optional[str]:
        return self._first_existing(self.bash_paths)

    def find_cmd(self) -> Optional[str]:
        return os.environ.get('COMSPEC') or 'cmd.exe'


class UnixInterpreterLocator(InterpreterLocator):
    """Localisation des interpréteurs sous Linux et macOS"""

    python_candidates = ['python3', 'python']

    pwsh_paths = ['/usr/bin/pwsh', '/usr/local/bin/pwsh', '/opt/microsoft/powershell/7/pwsh']

    @property
    def is_windows(self) -> bool:
        return False

    def find_powershell(self) -> Optional[str]:
        return self._which('pwsh') or self._first_existing(self.pwsh_paths)

    def find_bash(self) -> Optional[str]:
        if self._exists('/bin/bash'):
            return '/bin/bash'
        return self._which('bash')


def get_interpreter_locator(platform: Optional[str] = None) -> InterpreterLocator:
    """
    Retourne la stratégie adaptée à la plateforme

    Args:
        platform: Valeur de sys.platform à utiliser (courante par défaut)
    """
    platform = platform or sys.platform
    if platform == "win32":
        return WindowsInterpreterLocator()
    return UnixInterpreterLocator()
