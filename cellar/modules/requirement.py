# cellar/modules/requirement.py
"""
Environment requirements attached to formulae.

A requirement's check is a reference "kind:argument":
  python-import:<module>   the configured python can import <module>
  executable:<name>        <name> is on PATH
  env:<VAR>                environment variable set and non-empty
  path:<path>              file or directory exists
  command:<shell command>  shell command exits 0

Checks go through an EnvironmentProbe so they can be faked in tests.
"""

from __future__ import annotations
import os
import shutil
import subprocess
from typing import Dict, List, Optional

from cellar.modules.config import config
from cellar.modules.errors import ParseError
from cellar.modules import logger as _logger

CHECK_KINDS = ("python-import", "executable", "env", "path", "command")


class EnvironmentProbe:
    """Read-only view of the host environment."""

    def which(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def getenv(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def run(self, command, shell: bool = False) -> int:
        raise NotImplementedError


class SystemProbe(EnvironmentProbe):
    def __init__(self, timeout: int = 60):
        self.timeout = timeout

    def which(self, name):
        return shutil.which(name)

    def getenv(self, name):
        return os.environ.get(name)

    def exists(self, path):
        return os.path.exists(os.path.expanduser(path))

    def run(self, command, shell=False):
        try:
            proc = subprocess.run(command, shell=shell, stdout=subprocess.DEVNULL,
                                  stderr=subprocess.DEVNULL, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired):
            return 127
        return proc.returncode


class RequirementSpec:
    def __init__(self, name: str, check: str, fatal: bool = True, message: str = "",
                 default_formula: Optional[str] = None):
        kind, sep, argument = check.partition(":")
        if not sep or kind not in CHECK_KINDS or not argument.strip():
            raise ParseError(f"Requirement '{name}': invalid check reference '{check}'")
        self.name = name
        self.check = check
        self.kind = kind
        self.argument = argument.strip()
        self.fatal = bool(fatal)
        self.message = (message or "").strip()
        self.default_formula = default_formula

    @classmethod
    def from_dict(cls, data: Dict) -> "RequirementSpec":
        if not isinstance(data, dict) or not data.get("name") or not data.get("check"):
            raise ParseError(f"Requirement entries need 'name' and 'check': {data!r}")
        return cls(name=data["name"], check=data["check"], fatal=data.get("fatal", True),
                   message=data.get("message", ""), default_formula=data.get("default_formula"))

    def to_dict(self):
        return {
            "name": self.name,
            "check": self.check,
            "fatal": self.fatal,
            "message": self.message,
            "default_formula": self.default_formula,
        }

    def __repr__(self):
        return f"RequirementSpec({self.name!r}, {self.check!r}, fatal={self.fatal})"


class RequirementChecker:
    """Evaluates requirements, each distinct check at most once."""

    def __init__(self, probe: Optional[EnvironmentProbe] = None, python: Optional[str] = None):
        self.probe = probe or SystemProbe()
        self.python = python or config.get("build", "python", fallback="python3")
        self._results: Dict[str, bool] = {}
        self.log = _logger.Logger("requirement")

    def satisfied(self, req: RequirementSpec) -> bool:
        if req.check not in self._results:
            self._results[req.check] = self._evaluate(req)
            self.log.debug(f"requirement {req.name} ({req.check}) -> {self._results[req.check]}")
        return self._results[req.check]

    def _evaluate(self, req: RequirementSpec) -> bool:
        arg = req.argument
        if req.kind == "python-import":
            return self.probe.run([self.python, "-c", f"import {arg}"]) == 0
        if req.kind == "executable":
            return self.probe.which(arg) is not None
        if req.kind == "env":
            return bool(self.probe.getenv(arg))
        if req.kind == "path":
            return self.probe.exists(arg)
        if req.kind == "command":
            return self.probe.run(arg, shell=True) == 0
        return False

    def evaluated(self) -> List[str]:
        return list(self._results)
