# cellar/modules/build.py
"""
Build executor: runs one BuildTask.

Pipeline (each stage inside a private temporary workspace, always cleaned up):
  1. fetch source (archive or git head) and verify its checksum
  2. apply patches in declared order
  3. run the install action into <cellar>/<name>/<version>
  4. write the InstalledRecord
Any failure leaves no record behind; a prefix that existed before is restored.
"""

from __future__ import annotations
import os
import shutil
import tarfile
import threading
import time
import zipfile
from contextlib import contextmanager
from typing import Dict, Optional

from cellar.modules.actions import InstallContext, load_install_action
from cellar.modules.config import config
from cellar.modules.errors import BuildError, PatchError, TaskError
from cellar.modules.fetch import Fetcher
from cellar.modules.hooks import HookManager
from cellar.modules.state import InstalledRecord, InstalledStateStore
from cellar.modules.workspace import BuildWorkspace
from cellar.modules import logger as _logger


class BuildResult:
    def __init__(self, identity: str, prefix: str, record: InstalledRecord, duration: float,
                 output: str = ""):
        self.identity = identity
        self.prefix = prefix
        self.record = record
        self.duration = duration
        self.output = output

    def to_dict(self):
        return {
            "formula": self.identity,
            "prefix": self.prefix,
            "duration": round(self.duration, 3),
            "revision": self.record.revision,
        }


class BuildExecutor:
    def __init__(self,
                 store: InstalledStateStore,
                 fetcher: Optional[Fetcher] = None,
                 hooks: Optional[HookManager] = None,
                 cellar_dir: Optional[str] = None,
                 build_root: Optional[str] = None,
                 keep_workspace: Optional[bool] = None,
                 make_jobs: Optional[int] = None):
        self.store = store
        self.fetcher = fetcher or Fetcher()
        self.hooks = hooks or HookManager()
        self.cellar_dir = os.path.abspath(os.path.expanduser(
            cellar_dir or config.getpath("paths", "cellar_dir")))
        self.build_root = build_root or config.getpath("paths", "build_dir") or None
        if keep_workspace is None:
            keep_workspace = config.getboolean("build", "keep_workspace", fallback=False)
        self.keep_workspace = keep_workspace
        self.make_jobs = make_jobs or config.getint("build", "make_jobs", fallback=2)
        self.log = _logger.Logger("build")
        self._active: Dict[str, BuildWorkspace] = {}
        self._lock = threading.Lock()

    def prefix_for(self, formula) -> str:
        return os.path.join(self.cellar_dir, formula.name, formula.effective_version)

    def _dependency_prefixes(self, task) -> Dict[str, str]:
        prefixes = {}
        for dep in task.prerequisites:
            record = self.store.get(dep)
            if record and record.prefix:
                prefixes[dep] = record.prefix
        return prefixes

    # ---------------------------
    # Rollback
    # ---------------------------
    @contextmanager
    def _staged_prefix(self, prefix: str):
        """Move an existing prefix aside; put it back if the body fails."""
        backup = None
        if os.path.exists(prefix):
            backup = prefix + ".cellar-backup"
            if os.path.exists(backup):
                shutil.rmtree(backup)
            os.rename(prefix, backup)
        os.makedirs(prefix, exist_ok=True)
        try:
            yield prefix
        except BaseException:
            shutil.rmtree(prefix, ignore_errors=True)
            if backup:
                os.rename(backup, prefix)
                self.log.info(f"Restored previous install at {prefix}")
            raise
        if backup:
            shutil.rmtree(backup, ignore_errors=True)

    # ---------------------------
    # Stages
    # ---------------------------
    def _apply_patches(self, formula, workspace: BuildWorkspace):
        for index, patch in enumerate(formula.patches):
            path = self.fetcher.download(patch.url, workspace.download_dir, patch.checksum,
                                         formula=formula.full_name)
            command = ["patch", f"-p{patch.strip}", "--batch", "-i", path]
            try:
                result = workspace.run(command, cwd=workspace.build_dir)
            except OSError as e:
                raise PatchError(patch.url, output=str(e), formula=formula.full_name)
            if not result.ok():
                raise PatchError(patch.url, output=result.output, formula=formula.full_name)
            self.log.info(f"{formula.full_name}: applied patch {index + 1}/{len(formula.patches)} {patch.url}")

    def execute(self, task) -> BuildResult:
        formula = task.formula
        identity = task.identity
        start = time.time()
        prefix = self.prefix_for(formula)
        action = load_install_action(formula.install)
        workspace = BuildWorkspace(identity, base_dir=self.build_root, keep=self.keep_workspace)
        with self._lock:
            self._active[identity] = workspace
        self.log.info(f"Building {identity} {formula.effective_version} {task.options.as_flags()} "
                      f"({action.describe()})")
        try:
            with workspace:
                self.hooks.run_hooks("pre-fetch", formula, workspace)
                build_dir, revision = self.fetcher.fetch_source(formula, workspace)
                workspace.build_dir = build_dir
                self.hooks.run_hooks("post-fetch", formula, workspace)

                self._apply_patches(formula, workspace)

                context = InstallContext(formula, task.options, prefix, build_dir,
                                         self._dependency_prefixes(task), jobs=self.make_jobs,
                                         workspace=workspace)
                env = context.env()
                with self._staged_prefix(prefix):
                    self.hooks.run_hooks("pre-install", formula, workspace, env=env)
                    outcome = action.run(context)
                    self.hooks.run_hooks("post-install", formula, workspace, env=env)
                    record = InstalledRecord(
                        name=identity,
                        version=formula.effective_version,
                        source_hash=formula.source_hash,
                        options=task.options.as_flags(),
                        prefix=prefix,
                        dependencies=task.runtime_dependencies,
                        build_only=task.build_only,
                        revision=revision,
                    )
                    self.store.put(record)
        except TaskError as e:
            self.log.error(f"{identity}: {e}")
            raise
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            self.log.error(f"{identity}: {e}")
            raise BuildError(f"{identity}: {e}", formula=identity) from e
        finally:
            with self._lock:
                self._active.pop(identity, None)

        duration = time.time() - start
        self.log.success(f"Installed {identity} into {prefix} ({duration:.1f}s)")
        return BuildResult(identity, prefix, record, duration, outcome.output)

    def terminate(self):
        """Kill processes of every task still running."""
        with self._lock:
            workspaces = list(self._active.values())
        for ws in workspaces:
            ws.terminate()
