"""Requirement and constraint models with strict validation."""

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from packaging.markers import InvalidMarker, Marker
from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as PackagingRequirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import Version
from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)


class Requirement(BaseModel):
    """A package name plus version specifier and optional source hint.

    Immutable. Two requirements with the same textual form are the same
    requirement; ``str(req)`` is the key used by the resolution cache.
    """
    name: str
    specifier: str = ""
    extras: Tuple[str, ...] = ()
    marker: Optional[str] = None
    url: Optional[str] = None  # explicit source location (PEP 508 direct reference)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("specifier")
    @classmethod
    def validate_specifier(cls, v: str) -> str:
        """Validate and normalize the specifier into PEP 440 canonical form."""
        try:
            return str(SpecifierSet(v))
        except InvalidSpecifier as e:
            raise ValueError(f"Invalid version specifier '{v}': {e}")

    @field_validator("extras")
    @classmethod
    def validate_extras(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Canonicalize extras to a sorted tuple without duplicates."""
        return tuple(sorted({canonicalize_name(e) for e in v}))

    @field_validator("marker")
    @classmethod
    def validate_marker(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return str(Marker(v))
        except InvalidMarker as e:
            raise ValueError(f"Invalid environment marker '{v}': {e}")

    @classmethod
    def parse(cls, text: str, url: Optional[str] = None) -> "Requirement":
        """Parse a PEP 508 requirement string.

        Raises:
            ValueError: If the string is not a valid requirement
        """
        try:
            req = PackagingRequirement(text.strip())
        except InvalidRequirement as e:
            raise ValueError(f"Invalid requirement '{text}': {e}")
        return cls(
            name=req.name,
            specifier=str(req.specifier),
            extras=tuple(req.extras),
            marker=str(req.marker) if req.marker else None,
            url=url or req.url,
        )

    @property
    def canonical_name(self) -> str:
        return canonicalize_name(self.name)

    @property
    def specifier_set(self) -> SpecifierSet:
        return SpecifierSet(self.specifier)

    def contains(self, version: Version | str, prereleases: Optional[bool] = None) -> bool:
        """Return True if ``version`` satisfies this requirement's specifier."""
        return self.specifier_set.contains(str(version), prereleases=prereleases)

    def evaluate_marker(self, extras: Iterable[str] = ()) -> bool:
        """Evaluate the environment marker for the current interpreter.

        ``extras`` are the extras requested on the parent requirement; the
        marker matches if it matches for any of them (or for no extra).
        """
        if self.marker is None:
            return True
        marker = Marker(self.marker)
        candidates = [""] + sorted(extras)
        return any(marker.evaluate({"extra": extra}) for extra in candidates)

    def __str__(self) -> str:
        text = self.name
        if self.extras:
            text += f"[{','.join(self.extras)}]"
        if self.url:
            text += f" @ {self.url}"
            if self.marker:
                text += " "
        else:
            text += self.specifier
        if self.marker:
            text += f"; {self.marker}"
        return text

    def __repr__(self) -> str:
        return f"Requirement({str(self)!r})"


class Constraints:
    """Global per-package version limitations, independent of requirements.

    Adding a second constraint for a package intersects it with the first.
    """

    def __init__(self, constraints: Optional[Iterable[Requirement]] = None):
        self._specs: Dict[str, SpecifierSet] = {}
        self._sources: Dict[str, List[str]] = {}
        for req in constraints or ():
            self.add(req)

    def add(self, req: Requirement) -> None:
        if not req.evaluate_marker():
            logger.debug("ignoring constraint %s: marker does not match this environment", req)
            return
        name = req.canonical_name
        existing = self._specs.get(name, SpecifierSet())
        self._specs[name] = existing & req.specifier_set
        self._sources.setdefault(name, []).append(str(req))

    def get(self, name: str) -> Optional[SpecifierSet]:
        return self._specs.get(canonicalize_name(name))

    def describe(self, name: str) -> Optional[str]:
        """Return the constraint text for a package, or None if unconstrained."""
        spec = self.get(name)
        if spec is None:
            return None
        return f"{canonicalize_name(name)}{spec}"

    def allows(self, name: str, version: Version | str, prereleases: Optional[bool] = None) -> bool:
        """Return True if ``version`` of ``name`` is not excluded by any constraint."""
        spec = self.get(name)
        if spec is None:
            return True
        return spec.contains(str(version), prereleases=prereleases)

    def __contains__(self, name: str) -> bool:
        return canonicalize_name(name) in self._specs

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._specs))

    def __len__(self) -> int:
        return len(self._specs)

    def add_file(self, path: Path) -> None:
        """Add every constraint of a pip-style constraints file."""
        for req in read_requirements_file(path, self):
            self.add(req)

    @classmethod
    def load(cls, path: Path) -> "Constraints":
        constraints = cls()
        constraints.add_file(path)
        return constraints


def read_requirements_file(path: Path, constraints: Optional["Constraints"] = None) -> List[Requirement]:
    """Read a pip-style requirements file.

    Supports comments, blank lines, line continuations and nested ``-r``
    includes (relative to the including file). ``-c`` includes are added to
    ``constraints`` when given. Other pip options are skipped with a warning.
    """
    path = Path(path)
    requirements: List[Requirement] = []
    for line in _logical_lines(path.read_text(encoding="utf-8")):
        if line.startswith(("-r ", "--requirement ")):
            included = line.split(None, 1)[1].strip()
            requirements.extend(read_requirements_file(path.parent / included, constraints))
            continue
        if line.startswith(("-c ", "--constraint ")):
            included = path.parent / line.split(None, 1)[1].strip()
            if constraints is None:
                logger.warning("%s: ignoring constraints include %s", path, included)
            else:
                for req in read_requirements_file(included, constraints):
                    constraints.add(req)
            continue
        if line.startswith("-"):
            logger.warning("%s: ignoring unsupported option line %r", path, line)
            continue
        requirements.append(Requirement.parse(line))
    return requirements


def _logical_lines(text: str) -> Iterator[str]:
    pending = ""
    for raw in text.splitlines():
        line = raw.split(" #", 1)[0].rstrip()
        if line.lstrip().startswith("#"):
            line = ""
        if line.endswith("\\"):
            pending += line[:-1]
            continue
        line = (pending + line).strip()
        pending = ""
        if line:
            yield line
    if pending.strip():
        yield pending.strip()
