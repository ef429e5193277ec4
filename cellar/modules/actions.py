# cellar/modules/actions.py
"""
Install actions: the opaque step that turns a prepared source tree into an installed prefix.

 - ShellAction: list of shell steps, each optionally guarded by `when: with-<opt>`;
   steps are str.format()ed with the context (prefix, name, version, jobs, src, deps[...])
 - CallableAction: "package.module:function", called with the InstallContext
"""

from __future__ import annotations
import importlib
import re
from typing import Any, Dict, List, Optional

from cellar.modules.errors import BuildError, ParseError
from cellar.modules.options import BuildOptions, parse_flag


class InstallContext:
    def __init__(self, formula, options: BuildOptions, prefix: str, build_dir: str,
                 dependency_prefixes: Dict[str, str], jobs: int = 1, workspace=None):
        self.formula = formula
        self.options = options
        self.prefix = prefix
        self.build_dir = build_dir
        self.dependency_prefixes = dict(dependency_prefixes)
        self.jobs = jobs
        self.workspace = workspace

    def env(self) -> Dict[str, str]:
        env = {
            "PREFIX": self.prefix,
            "CELLAR_FORMULA": self.formula.full_name,
            "CELLAR_VERSION": self.formula.effective_version,
            "CELLAR_JOBS": str(self.jobs),
            "MAKEFLAGS": f"-j{self.jobs}",
            "CELLAR_OPTIONS": " ".join(self.options.as_flags()),
        }
        for name in self.options:
            env[f"CELLAR_WITH_{_env_key(name)}"] = "1" if self.options.with_(name) else "0"
        for identity, prefix in self.dependency_prefixes.items():
            env[f"CELLAR_DEP_{_env_key(identity.rsplit('/', 1)[-1])}"] = prefix
        return env

    def variables(self) -> Dict[str, Any]:
        deps = {}
        for identity, prefix in self.dependency_prefixes.items():
            deps[identity] = prefix
            deps[identity.rsplit("/", 1)[-1]] = prefix
        return {
            "prefix": self.prefix,
            "name": self.formula.name,
            "version": self.formula.effective_version,
            "jobs": self.jobs,
            "src": self.build_dir,
            "deps": deps,
        }


def _env_key(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


class ActionResult:
    def __init__(self, outputs: Optional[List[str]] = None):
        self.outputs = outputs or []

    @property
    def output(self) -> str:
        return "\n".join(self.outputs)


class InstallAction:
    def run(self, context: InstallContext) -> ActionResult:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class ShellAction(InstallAction):
    def __init__(self, steps):
        self.steps = list(steps)

    def _selected(self, context: InstallContext) -> List[str]:
        commands = []
        for step in self.steps:
            if isinstance(step, dict):
                when = step.get("when")
                if when:
                    name, wanted = parse_flag(when)
                    if context.options.with_(name) != wanted:
                        continue
                commands.append(step["run"])
            else:
                commands.append(step)
        return commands

    def run(self, context: InstallContext) -> ActionResult:
        outputs = []
        variables = context.variables()
        env = context.env()
        for template in self._selected(context):
            try:
                command = template.format(**variables)
            except (KeyError, IndexError, ValueError) as e:
                raise BuildError(f"{context.formula.full_name}: bad placeholder in '{template}': {e}",
                                 formula=context.formula.full_name)
            try:
                result = context.workspace.run(command, cwd=context.build_dir, env=env, shell=True)
            except OSError as e:
                raise BuildError(f"{context.formula.full_name}: could not run '{command}': {e}",
                                 formula=context.formula.full_name)
            outputs.append(f"$ {command}\n{result.output}")
            if not result.ok():
                raise BuildError(
                    f"{context.formula.full_name}: '{command}' exited with {result.returncode}",
                    output="\n".join(outputs), formula=context.formula.full_name,
                    returncode=result.returncode)
        return ActionResult(outputs)

    def describe(self):
        return f"{len(self.steps)} shell step(s)"


class CallableAction(InstallAction):
    def __init__(self, reference: str):
        self.reference = reference

    def resolve(self):
        module_name, _, attr = self.reference.partition(":")
        try:
            module = importlib.import_module(module_name)
            func = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise BuildError(f"Install action {self.reference} not importable: {e}")
        if not callable(func):
            raise BuildError(f"Install action {self.reference} is not callable")
        return func

    def run(self, context: InstallContext) -> ActionResult:
        func = self.resolve()
        try:
            out = func(context)
        except BuildError:
            raise
        except Exception as e:
            raise BuildError(f"{context.formula.full_name}: install action {self.reference} failed: {e}",
                             formula=context.formula.full_name)
        if isinstance(out, ActionResult):
            return out
        return ActionResult([str(out)] if out else [])

    def describe(self):
        return self.reference


def load_install_action(reference) -> InstallAction:
    if isinstance(reference, InstallAction):
        return reference
    if isinstance(reference, str):
        return CallableAction(reference)
    if isinstance(reference, (list, tuple)):
        return ShellAction(reference)
    raise ParseError(f"Unsupported install action {reference!r}")
