# cellar/modules/hooks.py
from typing import Callable, Dict, List, Optional

from cellar.modules.errors import BuildError
from cellar.modules.formula import HOOK_STAGES
from cellar.modules import logger


class HookManager:
    """
    Build stage hooks.
    - Global hooks: Python callables registered per stage, run for every formula
      as func(formula, workspace).
    - Formula hooks: shell commands listed under `hooks:` in the descriptor,
      run inside the task workspace.
    Stages: pre-fetch, post-fetch, pre-install, post-install.
    """

    def __init__(self):
        self.global_hooks: Dict[str, List[Callable]] = {}
        self.log = logger.Logger("hooks")

    def register_global(self, stage: str, func: Callable):
        if stage not in HOOK_STAGES:
            raise ValueError(f"Unknown hook stage: {stage}")
        self.global_hooks.setdefault(stage, []).append(func)
        self.log.debug(f"Global hook registered for stage={stage}: {func}")

    def run_hooks(self, stage: str, formula, workspace, env: Optional[Dict[str, str]] = None):
        funcs = self.global_hooks.get(stage, [])
        commands = formula.hooks.get(stage, [])
        if not funcs and not commands:
            return
        self.log.info(f"Running {stage} hooks for {formula.full_name}")

        for func in funcs:
            func(formula, workspace)

        for command in commands:
            result = workspace.run(command, env=env, shell=True)
            if not result.ok():
                raise BuildError(f"{formula.full_name}: {stage} hook '{command}' exited with "
                                 f"{result.returncode}", output=result.output,
                                 formula=formula.full_name, returncode=result.returncode)
