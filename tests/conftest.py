import hashlib
import io
import os
import tarfile

import pytest
import yaml

from cellar.modules.config import config

# keep test runs out of the user's log file
config.set("logging", "log_to_file", "false")
config.set("logging", "log_to_console", "false")

from cellar.modules.build import BuildExecutor  # noqa: E402
from cellar.modules.fetch import Fetcher  # noqa: E402
from cellar.modules.formula import FormulaRepository  # noqa: E402
from cellar.modules.graph import GraphBuilder  # noqa: E402
from cellar.modules.installer import Installer  # noqa: E402
from cellar.modules.requirement import EnvironmentProbe, RequirementChecker  # noqa: E402
from cellar.modules.state import InstalledStateStore  # noqa: E402

DEFAULT_INSTALL = [
    "mkdir -p {prefix}/share/{name}",
    "cp README {prefix}/share/{name}/README",
]


class FakeProbe(EnvironmentProbe):
    """Environment with a fixed set of executables, variables, paths and python modules."""

    def __init__(self, executables=(), env=None, paths=(), modules=(), commands=()):
        self.executables = set(executables)
        self.env = dict(env or {})
        self.paths = set(paths)
        self.modules = set(modules)
        self.commands = set(commands)
        self.calls = []

    def which(self, name):
        self.calls.append(("which", name))
        return f"/usr/bin/{name}" if name in self.executables else None

    def getenv(self, name):
        self.calls.append(("getenv", name))
        return self.env.get(name)

    def exists(self, path):
        self.calls.append(("exists", path))
        return path in self.paths

    def run(self, command, shell=False):
        self.calls.append(("run", command))
        if isinstance(command, list):
            module = command[-1].replace("import ", "")
            return 0 if module in self.modules else 1
        return 0 if command in self.commands else 1


def make_archive(directory, name, version, files=None):
    """Write <name>-<version>.tar.gz with a single top-level directory; return (path, sha256)."""
    files = files or {"README": f"{name} {version}\n"}
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(str(directory), f"{name}-{version}.tar.gz")
    with tarfile.open(path, "w:gz") as tar:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{name}-{version}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    with open(path, "rb") as fh:
        digest = hashlib.sha256(fh.read()).hexdigest()
    return path, digest


class Tap:
    """A formula directory written on the fly."""

    def __init__(self, root, archives):
        self.root = str(root)
        self.archives = str(archives)
        os.makedirs(self.root, exist_ok=True)

    def add(self, name, version="1.0", depends=None, install=None, files=None, **fields):
        data = {"name": name, "version": version}
        if "url" not in fields and "head" not in fields:
            path, digest = make_archive(self.archives, name, version, files)
            data["url"] = path
            data["sha256"] = digest
        data["depends"] = list(depends or [])
        data["install"] = install if install is not None else list(DEFAULT_INSTALL)
        data.update(fields)
        with open(os.path.join(self.root, f"{name}.yaml"), "w", encoding="utf-8") as fh:
            yaml.safe_dump(data, fh, sort_keys=False)
        return data


@pytest.fixture
def tap(tmp_path):
    return Tap(tmp_path / "taps" / "core", tmp_path / "archives")


@pytest.fixture
def repository(tap):
    return FormulaRepository([("core", tap.root)])


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def builder(repository, probe):
    return GraphBuilder(repository, RequirementChecker(probe))


@pytest.fixture
def store(tmp_path):
    return InstalledStateStore(str(tmp_path / "state"))


@pytest.fixture
def fetcher():
    return Fetcher(retries=2, backoff=0.01, timeout=5, sleep=lambda s: None)


@pytest.fixture
def executor(tmp_path, store, fetcher):
    return BuildExecutor(store, fetcher=fetcher, cellar_dir=str(tmp_path / "Cellar"),
                         build_root=str(tmp_path / "build"), keep_workspace=False, make_jobs=1)


@pytest.fixture
def installer(repository, store, executor, probe):
    return Installer(repository=repository, store=store, executor=executor, probe=probe,
                     jobs=2, grace_period=5)


@pytest.fixture
def diamond(tap):
    """A (no deps), B -> A, C -> A (build), D -> B, C."""
    tap.add("a")
    tap.add("b", depends=["a"])
    tap.add("c", depends=[{"a": "build"}])
    tap.add("d", depends=["b", "c"])
    return tap
