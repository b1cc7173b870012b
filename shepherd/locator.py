"""
Program Locator - Resolve a short program name to a launchable path.

Lookup is an ordered list of strategies over a static table of known
install locations. The first strategy to return an existing path wins.
Exhaustion is a normal "not found" (None), never an exception: callers
then hand the bare name to the OS launcher, which can still resolve
PATH-registered programs and protocol handlers.

Order:
    1. Suite search - Office-style apps installed under versioned roots.
       Newest version first, 64-bit root before 32-bit root.
    2. Flat search - single known location(s) per common application.

Usage:
    from shepherd.locator import ProgramLocator

    locator = ProgramLocator()
    locator.find("winword")   # "C:\\Program Files\\Microsoft Office\\root\\Office16\\WINWORD.EXE"
    locator.find("nope")      # None
"""

import logging
import ntpath
import os
import posixpath
import sys
from typing import Callable, Dict, List, Mapping, Optional

from shepherd.types import ProgramDescriptor

logger = logging.getLogger("shepherd.locator")


# Office suite: short name -> executable file name
SUITE_EXECUTABLES = {
    "winword": "WINWORD.EXE",
    "excel": "EXCEL.EXE",
    "powerpnt": "POWERPNT.EXE",
    "mspub": "MSPUB.EXE",
    "outlook": "OUTLOOK.EXE",
    "onenote": "ONENOTE.EXE",
    "msaccess": "MSACCESS.EXE",
}

# Newest first. Click-to-Run installs live under root\OfficeNN.
SUITE_VERSION_DIRS = [
    "root\\Office16",
    "Office16",
    "root\\Office15",
    "Office15",
    "Office14",
]

# Windows single-location apps. Templates use {ProgramFiles}-style keys
# filled from the environment.
WINDOWS_FLAT_LOCATIONS = {
    "chrome": [
        "{ProgramFiles}\\Google\\Chrome\\Application\\chrome.exe",
        "{ProgramFiles(x86)}\\Google\\Chrome\\Application\\chrome.exe",
        "{LOCALAPPDATA}\\Google\\Chrome\\Application\\chrome.exe",
    ],
    "firefox": [
        "{ProgramFiles}\\Mozilla Firefox\\firefox.exe",
        "{ProgramFiles(x86)}\\Mozilla Firefox\\firefox.exe",
    ],
    "msedge": [
        "{ProgramFiles(x86)}\\Microsoft\\Edge\\Application\\msedge.exe",
        "{ProgramFiles}\\Microsoft\\Edge\\Application\\msedge.exe",
    ],
    "notepad": ["{SystemRoot}\\System32\\notepad.exe"],
    "mspaint": ["{SystemRoot}\\System32\\mspaint.exe"],
    "calc": ["{SystemRoot}\\System32\\calc.exe"],
    "wordpad": ["{ProgramFiles}\\Windows NT\\Accessories\\wordpad.exe"],
    "explorer": ["{SystemRoot}\\explorer.exe"],
    "taskmgr": ["{SystemRoot}\\System32\\Taskmgr.exe"],
    "control": ["{SystemRoot}\\System32\\control.exe"],
    "vlc": [
        "{ProgramFiles}\\VideoLAN\\VLC\\vlc.exe",
        "{ProgramFiles(x86)}\\VideoLAN\\VLC\\vlc.exe",
    ],
}

POSIX_FLAT_LOCATIONS = {
    "chrome": ["/usr/bin/google-chrome", "/opt/google/chrome/chrome"],
    "firefox": ["/usr/bin/firefox", "/snap/bin/firefox"],
    "msedge": ["/usr/bin/microsoft-edge"],
    "vlc": ["/usr/bin/vlc", "/snap/bin/vlc"],
    "libreoffice": ["/usr/bin/libreoffice", "/opt/libreoffice/program/soffice"],
}

# Launch name -> running process name, where they differ
PROCESS_NAME_ALIASES = {
    "calc": "calculator",
}

WINDOWS_ENV_DEFAULTS = {
    "ProgramFiles": "C:\\Program Files",
    "ProgramFiles(x86)": "C:\\Program Files (x86)",
    "SystemRoot": "C:\\Windows",
    "LOCALAPPDATA": "",
}


Strategy = Callable[[str], Optional[str]]


class ProgramLocator:
    """
    Best-effort resolver from short program name to an existing path.

    Args:
        is_windows: Target platform (defaults to the running one)
        environ: Environment used to fill install-root templates
        exists: Existence probe (defaults to os.path.isfile)
    """

    def __init__(
        self,
        is_windows: Optional[bool] = None,
        environ: Optional[Mapping[str, str]] = None,
        exists: Optional[Callable[[str], bool]] = None,
    ):
        self.is_windows = sys.platform == "win32" if is_windows is None else is_windows
        self._environ = os.environ if environ is None else environ
        self._exists = exists or os.path.isfile
        self._path = ntpath if self.is_windows else posixpath
        self.strategies: List[Strategy] = [self._find_suite, self._find_flat]

    def _env(self, key: str) -> str:
        value = self._environ.get(key)
        if value is None and self.is_windows:
            value = WINDOWS_ENV_DEFAULTS.get(key, "")
        return value or ""

    def _program_roots(self) -> List[str]:
        """64-bit root first, then 32-bit."""
        roots = []
        for key in ("ProgramFiles", "ProgramFiles(x86)"):
            root = self._env(key)
            if root and root not in roots:
                roots.append(root)
        return roots

    def suite_candidates(self, key: str) -> List[str]:
        exe = SUITE_EXECUTABLES.get(key)
        if not exe or not self.is_windows:
            return []
        candidates = []
        for version_dir in SUITE_VERSION_DIRS:
            for root in self._program_roots():
                candidates.append(self._path.join(root, "Microsoft Office", version_dir, exe))
        return candidates

    def flat_candidates(self, key: str) -> List[str]:
        table = WINDOWS_FLAT_LOCATIONS if self.is_windows else POSIX_FLAT_LOCATIONS
        candidates = []
        for template in table.get(key, []):
            if template.startswith("{"):
                root_key, rest = template[1:].split("}", 1)
                root = self._env(root_key)
                # Unknown root: skip rather than probe a relative path
                if not root:
                    continue
                template = root + rest
            candidates.append(template)
        return candidates

    def _first_existing(self, candidates: List[str]) -> Optional[str]:
        for candidate in candidates:
            try:
                if self._exists(candidate):
                    return candidate
            except OSError as e:
                logger.debug(f"Probe failed for {candidate}: {e}")
        return None

    def _find_suite(self, key: str) -> Optional[str]:
        return self._first_existing(self.suite_candidates(key))

    def _find_flat(self, key: str) -> Optional[str]:
        return self._first_existing(self.flat_candidates(key))

    @staticmethod
    def normalize_key(name: str) -> str:
        """'WINWORD.EXE' and 'winword' look up the same entry."""
        key = name.strip().lower()
        if key.endswith(".exe"):
            key = key[:-4]
        return key

    def find(self, name: str) -> Optional[str]:
        """Return the first existing known path for `name`, or None."""
        key = self.normalize_key(name)
        if not key:
            return None
        for strategy in self.strategies:
            path = strategy(key)
            if path:
                logger.debug(f"Resolved {name} -> {path}")
                return path
        return None

    def looks_like_path(self, target: str) -> bool:
        return "/" in target or "\\" in target or self._path.isabs(target)

    def describe(self, target: str) -> ProgramDescriptor:
        """
        Build a descriptor from whatever the operator typed.

        A path is taken as already resolved; a short name goes through find().
        """
        suffix = ".exe" if self.is_windows else ""
        if self.looks_like_path(target):
            base = self._path.basename(target)
            stem = self._path.splitext(base)[0] if suffix else base
            return ProgramDescriptor(
                short_name=stem,
                resolved_path=target,
                process_image_name=base,
                suffix=suffix,
            )

        key = self.normalize_key(target)
        image = PROCESS_NAME_ALIASES.get(key, key) if self.is_windows else target.strip()
        return ProgramDescriptor(
            short_name=target.strip(),
            resolved_path=self.find(target),
            process_image_name=image,
            suffix=suffix,
        )

    def known_programs(self) -> Dict[str, List[str]]:
        """Every candidate path per known program, in lookup order."""
        keys = set(WINDOWS_FLAT_LOCATIONS if self.is_windows else POSIX_FLAT_LOCATIONS)
        if self.is_windows:
            keys |= set(SUITE_EXECUTABLES)
        return {k: self.suite_candidates(k) + self.flat_candidates(k) for k in sorted(keys)}
