# cellar/modules/options.py
"""
Build options: with-X / without-X flags resolved once per formula per resolution.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Tuple

from cellar.modules.errors import InvalidOptionError


def parse_flag(flag: str) -> Tuple[str, bool]:
    """'--with-grass' -> ('grass', True); 'without-gsl' -> ('gsl', False); 'debug' -> ('debug', True)"""
    f = flag.strip().lstrip("-")
    if f.startswith("with-") and len(f) > 5:
        return f[5:], True
    if f.startswith("without-") and len(f) > 8:
        return f[8:], False
    if not f:
        raise ValueError(f"Empty option flag: {flag!r}")
    return f, True


def to_flag(name: str, value: bool) -> str:
    return f"with-{name}" if value else f"without-{name}"


class Option:
    """A declared option. `default` True means the feature is on unless --without-<name>."""

    def __init__(self, name: str, default: bool = False, description: str = ""):
        self.name = name
        self.default = bool(default)
        self.description = description

    @property
    def flag(self) -> str:
        # the flag a user passes to flip the default
        return to_flag(self.name, not self.default)

    def __repr__(self):
        return f"Option({self.name!r}, default={self.default})"

    def __eq__(self, other):
        if not isinstance(other, Option):
            return NotImplemented
        return (self.name, self.default) == (other.name, other.default)

    def __hash__(self):
        return hash((self.name, self.default))


class BuildOptions:
    """Immutable option -> bool mapping."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, bool] = None):
        object.__setattr__(self, "_values", dict(sorted((values or {}).items())))

    def __setattr__(self, key, value):
        raise AttributeError("BuildOptions is immutable")

    @classmethod
    def resolve(cls, formula: str, declared: Mapping[str, Option],
                requested: Mapping[str, bool] = None) -> "BuildOptions":
        values = {name: opt.default for name, opt in declared.items()}
        for name, value in (requested or {}).items():
            if name not in declared:
                raise InvalidOptionError(formula, to_flag(name, value),
                                         sorted(opt.flag for opt in declared.values()))
            values[name] = bool(value)
        return cls(values)

    @classmethod
    def from_flags(cls, flags: Iterable[str]) -> "BuildOptions":
        return cls(dict(parse_flag(f) for f in flags))

    def with_(self, name: str) -> bool:
        return self._values.get(name, False)

    def without(self, name: str) -> bool:
        return not self.with_(name)

    def as_flags(self) -> List[str]:
        return [to_flag(name, value) for name, value in self._values.items()]

    def as_dict(self) -> Dict[str, bool]:
        return dict(self._values)

    def __contains__(self, name):
        return name in self._values

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def __eq__(self, other):
        if not isinstance(other, BuildOptions):
            return NotImplemented
        return self._values == other._values

    def __hash__(self):
        return hash(tuple(self._values.items()))

    def __repr__(self):
        return f"BuildOptions({self.as_flags()})"


def flags_to_requests(flags: Iterable[str]) -> Dict[str, bool]:
    requests: Dict[str, bool] = {}
    for flag in flags:
        name, value = parse_flag(flag)
        requests[name] = value
    return requests
