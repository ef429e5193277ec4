# cellar/modules/formula.py
"""
Formula model and loader.

A formula is a YAML descriptor living in a tap (namespace directory):
  <tap>/<name>.yaml  or  <tap>/<name>/formula.yaml

Example:

  name: h5utils
  version: 1.12.1
  homepage: http://ab-initio.mit.edu/wiki/index.php/H5utils
  url: http://ab-initio.mit.edu/h5utils/h5utils-1.12.1.tar.gz
  sha1: 1bd8ef8c50221da35aafb5424de9b5f177250d2d
  depends:
    - libpng
    - hdf5
  patches:
    - url: https://trac.macports.org/export/102291/trunk/dports/science/h5utils/files/patch-writepng.c
      sha1: 026aa59f2e13388d0b7834de6dcbd48da2858cbe
      strip: 0
  install:
    - ./configure --prefix={prefix} --without-octave
    - make install

Formulae are immutable once loaded; the loader never touches anything but the tap files.
"""

from __future__ import annotations
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from cellar.modules.config import config
from cellar.modules.errors import NotFoundError, ParseError
from cellar.modules.options import Option, parse_flag
from cellar.modules.requirement import RequirementSpec
from cellar.modules import logger as _logger

REQUIRED = "required"
BUILD = "build"
RECOMMENDED = "recommended"
OPTIONAL = "optional"
TEST = "test"

QUALIFIERS = (REQUIRED, BUILD, RECOMMENDED, OPTIONAL, TEST)
QUALIFIER_ALIASES = {
    "run": REQUIRED,
    "runtime": REQUIRED,
    "build-only": BUILD,
    "test-only": TEST,
}

CHECKSUM_ALGORITHMS = ("sha256", "sha1", "md5")
HOOK_STAGES = ("pre-fetch", "post-fetch", "pre-install", "post-install")


def normalize_qualifier(value: Any, formula: str) -> str:
    q = str(value or REQUIRED).strip().lstrip(":").lower()
    q = QUALIFIER_ALIASES.get(q, q)
    if q not in QUALIFIERS:
        raise ParseError(f"{formula}: unknown dependency qualifier '{value}'", formula=formula)
    return q


class Checksum:
    def __init__(self, algorithm: str, digest: str):
        self.algorithm = algorithm
        self.digest = digest.lower()

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], owner: str) -> Optional["Checksum"]:
        """Accepts {sha256: ...}, {sha1: ...}, {md5: ...} or {checksum: {algorithm, digest}}."""
        found = [algo for algo in CHECKSUM_ALGORITHMS if data.get(algo)]
        nested = data.get("checksum")
        if nested:
            if not isinstance(nested, dict) or not nested.get("digest"):
                raise ParseError(f"{owner}: 'checksum' must be a mapping with 'algorithm' and 'digest'")
            algo = str(nested.get("algorithm", "sha256")).lower()
            if algo not in CHECKSUM_ALGORITHMS:
                raise ParseError(f"{owner}: unsupported checksum algorithm '{algo}'")
            found.append(algo)
            digest = str(nested["digest"])
        elif found:
            digest = str(data[found[0]])
        else:
            return None
        if len(found) > 1:
            raise ParseError(f"{owner}: more than one checksum given ({', '.join(found)})")
        return cls(found[0], digest)

    def __str__(self):
        return f"{self.algorithm}:{self.digest}"

    def __eq__(self, other):
        return isinstance(other, Checksum) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))


class SourceSpec:
    """Archive source: URL plus content hash."""

    def __init__(self, url: str, checksum: Checksum):
        self.url = url
        self.checksum = checksum

    @property
    def identity(self) -> str:
        return str(self.checksum)


class HeadSpec:
    """Version-control reference (git)."""

    def __init__(self, url: str, branch: Optional[str] = None):
        self.url = url
        self.branch = branch

    @property
    def identity(self) -> str:
        return f"head:{self.url}@{self.branch or 'default'}"


class DependencySpec:
    def __init__(self, name: str, qualifier: str = REQUIRED, options: Tuple[str, ...] = ()):
        self.name = name
        self.qualifier = qualifier
        self.options = tuple(options)

    @property
    def short_name(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    def requests(self) -> Dict[str, bool]:
        return dict(parse_flag(f) for f in self.options)

    def __repr__(self):
        return f"DependencySpec({self.name!r}, {self.qualifier!r})"


class PatchSpec:
    def __init__(self, url: str, checksum: Optional[Checksum], strip: int = 1):
        self.url = url
        self.checksum = checksum
        self.strip = strip

    def __repr__(self):
        return f"PatchSpec({self.url!r}, -p{self.strip})"


class Formula:
    def __init__(self, name: str, tap: str, version: Optional[str], homepage: str = "",
                 desc: str = "", source: Optional[SourceSpec] = None, head: Optional[HeadSpec] = None,
                 dependencies: Tuple[DependencySpec, ...] = (),
                 requirements: Tuple[RequirementSpec, ...] = (),
                 patches: Tuple[PatchSpec, ...] = (), options: Optional[Dict[str, Option]] = None,
                 install: Any = None, caveats: str = "", hooks: Optional[Dict[str, List[str]]] = None,
                 path: Optional[str] = None):
        self.name = name
        self.tap = tap
        self.version = version
        self.homepage = homepage
        self.desc = desc
        self.source = source
        self.head = head
        self.dependencies = tuple(dependencies)
        self.requirements = tuple(requirements)
        self.patches = tuple(patches)
        self.declared_options = dict(options or {})
        self.install = install
        self.caveats = caveats
        self.hooks = dict(hooks or {})
        self.path = path

    @property
    def full_name(self) -> str:
        return f"{self.tap}/{self.name}"

    @property
    def head_only(self) -> bool:
        return self.source is None

    @property
    def effective_version(self) -> str:
        return self.version if self.source is not None else "HEAD"

    @property
    def source_hash(self) -> str:
        return self.source.identity if self.source is not None else self.head.identity

    @property
    def options(self) -> Dict[str, Option]:
        """Declared options plus those implied by recommended/optional dependencies."""
        opts: Dict[str, Option] = {}
        for dep in self.dependencies:
            if dep.qualifier == RECOMMENDED:
                opts[dep.short_name] = Option(dep.short_name, default=True,
                                              description=f"Build with {dep.short_name} support")
            elif dep.qualifier == OPTIONAL:
                opts[dep.short_name] = Option(dep.short_name, default=False,
                                              description=f"Build with {dep.short_name} support")
        opts.update(self.declared_options)
        return opts

    def __repr__(self):
        return f"Formula({self.full_name!r}, {self.effective_version!r})"


# ---------------------------
# Descriptor parsing
# ---------------------------
def _parse_dependency(entry: Any, owner: str) -> DependencySpec:
    if isinstance(entry, str):
        return DependencySpec(entry.strip(), REQUIRED)
    if isinstance(entry, dict):
        if "name" in entry:
            options = entry.get("options") or []
            if not isinstance(options, list):
                raise ParseError(f"{owner}: dependency options must be a list", formula=owner)
            return DependencySpec(str(entry["name"]).strip(),
                                  normalize_qualifier(entry.get("qualifier"), owner),
                                  tuple(str(o) for o in options))
        if len(entry) == 1:
            name, qualifier = next(iter(entry.items()))
            return DependencySpec(str(name).strip(), normalize_qualifier(qualifier, owner))
    raise ParseError(f"{owner}: malformed dependency entry {entry!r}", formula=owner)


def _parse_option(entry: Any, owner: str) -> Option:
    if isinstance(entry, str):
        name, value = parse_flag(entry)
        # "with-x" declares x off by default, "without-x" declares x on by default
        return Option(name, default=not value)
    if isinstance(entry, dict) and entry.get("name"):
        name = str(entry["name"])
        if name.startswith(("with-", "without-")):
            name, _ = parse_flag(name)
        return Option(name, default=bool(entry.get("default", False)),
                      description=entry.get("description", ""))
    raise ParseError(f"{owner}: malformed option entry {entry!r}", formula=owner)


def _parse_patch(entry: Any, owner: str) -> PatchSpec:
    if not isinstance(entry, dict) or not entry.get("url"):
        raise ParseError(f"{owner}: patch entries need a 'url'", formula=owner)
    strip = entry.get("strip", 1)
    if isinstance(strip, str):
        strip = strip.lstrip(":p")
    try:
        strip = int(strip)
    except (TypeError, ValueError):
        raise ParseError(f"{owner}: invalid patch strip level {entry.get('strip')!r}", formula=owner)
    return PatchSpec(entry["url"], Checksum.from_mapping(entry, owner), strip)


def _parse_install(value: Any, owner: str):
    if value is None:
        raise ParseError(f"{owner}: missing 'install'", formula=owner)
    if isinstance(value, str):
        if ":" not in value:
            raise ParseError(f"{owner}: install callable must look like 'module:function'", formula=owner)
        return value
    if isinstance(value, list):
        steps = []
        for step in value:
            if isinstance(step, str):
                steps.append(step)
            elif isinstance(step, dict) and isinstance(step.get("run"), str):
                steps.append({"run": step["run"], "when": step.get("when")})
            else:
                raise ParseError(f"{owner}: malformed install step {step!r}", formula=owner)
        return tuple(steps)
    raise ParseError(f"{owner}: 'install' must be a list of steps or 'module:function'", formula=owner)


def _parse_hooks(value: Any, owner: str) -> Dict[str, List[str]]:
    if not isinstance(value, dict) or any(stage not in HOOK_STAGES for stage in value):
        raise ParseError(f"{owner}: 'hooks' must map stages {HOOK_STAGES} to commands", formula=owner)
    hooks = {}
    for stage, cmds in value.items():
        if cmds is None:
            cmds = []
        elif isinstance(cmds, str):
            cmds = [cmds]
        if not isinstance(cmds, list) or not all(isinstance(c, str) for c in cmds):
            raise ParseError(f"{owner}: hook '{stage}' must be a command or a list of commands",
                             formula=owner)
        hooks[stage] = list(cmds)
    return hooks


def parse_formula(data: Dict[str, Any], tap: str, expected_name: Optional[str] = None,
                  path: Optional[str] = None) -> Formula:
    if not isinstance(data, dict):
        raise ParseError(f"Formula descriptor must be a mapping ({path})")
    name = data.get("name")
    if not name:
        raise ParseError(f"Formula descriptor without 'name' ({path})")
    name = str(name)
    if expected_name and name != expected_name:
        raise ParseError(f"Formula file for '{expected_name}' declares name '{name}'", formula=name)

    source = None
    if data.get("url"):
        checksum = Checksum.from_mapping(data, name)
        if checksum is None:
            raise ParseError(f"{name}: 'url' given without a checksum", formula=name)
        source = SourceSpec(str(data["url"]), checksum)

    head = None
    raw_head = data.get("head")
    if isinstance(raw_head, str):
        head = HeadSpec(raw_head)
    elif isinstance(raw_head, dict) and raw_head.get("url"):
        head = HeadSpec(str(raw_head["url"]), raw_head.get("branch"))
    elif raw_head:
        raise ParseError(f"{name}: malformed 'head' entry", formula=name)

    if source is None and head is None:
        raise ParseError(f"{name}: needs a 'url' or a 'head' source", formula=name)
    version = data.get("version")
    if source is not None and not version:
        raise ParseError(f"{name}: missing 'version'", formula=name)

    for field in ("depends", "requirements", "patches", "options"):
        if field in data and not isinstance(data[field] or [], list):
            raise ParseError(f"{name}: field '{field}' must be a list", formula=name)

    deps = [_parse_dependency(d, name) for d in data.get("depends") or []]
    seen = set()
    for d in deps:
        if d.name in seen:
            raise ParseError(f"{name}: dependency '{d.name}' listed twice", formula=name)
        seen.add(d.name)

    try:
        requirements = [RequirementSpec.from_dict(r) for r in data.get("requirements") or []]
    except ParseError as e:
        raise ParseError(f"{name}: {e}", formula=name)

    options = {}
    for entry in data.get("options") or []:
        opt = _parse_option(entry, name)
        options[opt.name] = opt

    return Formula(
        name=name,
        tap=tap,
        version=str(version) if version is not None else None,
        homepage=data.get("homepage", ""),
        desc=data.get("desc", ""),
        source=source,
        head=head,
        dependencies=tuple(deps),
        requirements=tuple(requirements),
        patches=tuple(_parse_patch(p, name) for p in data.get("patches") or []),
        options=options,
        install=_parse_install(data.get("install"), name),
        caveats=(data.get("caveats") or "").strip(),
        hooks=_parse_hooks(data.get("hooks") or {}, name),
        path=path,
    )


# ---------------------------
# Repository (taps)
# ---------------------------
class FormulaRepository:
    """Looks formulae up across taps; caches each loaded formula."""

    def __init__(self, taps: Optional[List[Tuple[str, str]]] = None):
        self.taps = taps if taps is not None else config.taps()
        self._cache: Dict[str, Formula] = {}
        self.log = _logger.Logger("formula")

    def _candidates(self, tap_dir: str, name: str) -> List[str]:
        return [
            os.path.join(tap_dir, f"{name}.yaml"),
            os.path.join(tap_dir, f"{name}.yml"),
            os.path.join(tap_dir, name, "formula.yaml"),
        ]

    def find(self, identity: str, prefer_tap: Optional[str] = None) -> Tuple[str, str]:
        """Return (tap, path) for identity ('name' or 'tap/name')."""
        if "/" in identity:
            tap, name = identity.split("/", 1)
            taps = [(ns, d) for ns, d in self.taps if ns == tap]
        else:
            name = identity
            taps = list(self.taps)
            if prefer_tap:
                taps.sort(key=lambda t: t[0] != prefer_tap)
        for ns, tap_dir in taps:
            for candidate in self._candidates(tap_dir, name):
                if os.path.isfile(candidate):
                    return ns, candidate
        raise NotFoundError(f"No formula named '{identity}'", formula=identity)

    def load(self, identity: str, prefer_tap: Optional[str] = None) -> Formula:
        tap, path = self.find(identity, prefer_tap=prefer_tap)
        name = identity.rsplit("/", 1)[-1]
        key = f"{tap}/{name}"
        if key in self._cache:
            return self._cache[key]
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as e:
            raise ParseError(f"{key}: invalid YAML in {path}: {e}", formula=key)
        except UnicodeDecodeError as e:
            raise ParseError(f"{key}: {path} is not valid UTF-8: {e}", formula=key)
        except OSError as e:
            raise ParseError(f"{key}: cannot read {path}: {e}", formula=key)
        formula = parse_formula(data, tap, expected_name=name, path=path)
        self._cache[key] = formula
        self.log.debug(f"Loaded formula {key} from {path}")
        return formula

    def exists(self, identity: str) -> bool:
        try:
            self.find(identity)
            return True
        except NotFoundError:
            return False

    def names(self) -> List[str]:
        found = []
        for ns, tap_dir in self.taps:
            if not os.path.isdir(tap_dir):
                continue
            for entry in sorted(os.listdir(tap_dir)):
                full = os.path.join(tap_dir, entry)
                if entry.endswith((".yaml", ".yml")) and os.path.isfile(full):
                    found.append(f"{ns}/{entry.rsplit('.', 1)[0]}")
                elif os.path.isfile(os.path.join(full, "formula.yaml")):
                    found.append(f"{ns}/{entry}")
        return found
