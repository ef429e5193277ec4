# cellar/modules/workspace.py
import os
import shutil
import subprocess
import tempfile
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from cellar.modules import logger


class CommandResult:
    """Outcome of one command run inside a workspace"""

    def __init__(self, command, returncode, stdout, stderr, duration):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.duration = duration
        self.timestamp = datetime.now().isoformat()

    def ok(self):
        return self.returncode == 0

    @property
    def output(self):
        return (self.stdout or "") + (self.stderr or "")

    def to_dict(self):
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }


class BuildWorkspace:
    """
    Temporary, task-private build directory.
      <tmp>/download  fetched archives and patches
      <tmp>/src       unpacked source tree (build_dir is set to the entered directory)
    Removed on exit unless keep=True. Processes started through run() are tracked so
    terminate() can kill them.
    """

    def __init__(self, name: str, base_dir: Optional[str] = None, keep: bool = False):
        self.name = name.replace("/", "-")
        self.base_dir = base_dir or None
        self.keep = keep
        self.path: Optional[str] = None
        self.build_dir: Optional[str] = None
        self.log = logger.Logger("workspace")
        self._procs: List[subprocess.Popen] = []
        self._lock = threading.Lock()
        self.history: List[Dict] = []

    # -------------------------------
    # Core
    # -------------------------------
    def prepare(self):
        if self.base_dir:
            os.makedirs(self.base_dir, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix=f"cellar-{self.name}-", dir=self.base_dir)
        os.makedirs(self.download_dir, exist_ok=True)
        os.makedirs(self.src_dir, exist_ok=True)
        self.build_dir = self.src_dir
        self.log.debug(f"Workspace ready at {self.path}")
        return self

    @property
    def download_dir(self):
        return os.path.join(self.path, "download")

    @property
    def src_dir(self):
        return os.path.join(self.path, "src")

    def cleanup(self):
        if not self.path or not os.path.exists(self.path):
            return
        if self.keep:
            self.log.info(f"Keeping workspace {self.path}")
            return
        shutil.rmtree(self.path, ignore_errors=True)
        self.log.debug(f"Removed workspace {self.path}")

    def __enter__(self):
        return self.prepare()

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    # -------------------------------
    # Commands
    # -------------------------------
    def run(self, command, cwd=None, env=None, shell=False, timeout=None) -> CommandResult:
        printable = command if isinstance(command, str) else " ".join(command)
        self.log.info(f"[{self.name}] {printable}")
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        start = time.time()
        proc = subprocess.Popen(
            command,
            cwd=cwd or self.build_dir,
            env=full_env,
            shell=shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        with self._lock:
            self._procs.append(proc)
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            stderr = (stderr or "") + f"\ntimeout after {timeout}s"
        finally:
            with self._lock:
                self._procs.remove(proc)

        result = CommandResult(command, proc.returncode, stdout, stderr, time.time() - start)
        self.history.append(result.to_dict())
        return result

    def terminate(self):
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            if proc.poll() is None:
                self.log.warning(f"[{self.name}] killing pid {proc.pid}")
                proc.kill()
