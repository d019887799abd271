"""Constraint-based version selection over pluggable providers.

A provider lists every available (version, location) pair for a package.
The resolver filters that list by the requirement's specifier, the global
constraints, pre-release policy and platform compatibility, then picks the
highest remaining version. Results are memoized by requirement string for
the whole run, so the same requirement is never resolved twice.
"""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

import requests
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.tags import Tag, sys_tags
from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)
from packaging.version import InvalidVersion, Version

from .._internal.retry import RetryPolicy
from ..errors import ResolutionError
from .cache import ResolutionCache
from .requirements import Constraints, Requirement

logger = logging.getLogger(__name__)

PYPI_SIMPLE_URL = "https://pypi.org/simple"
WILDCARD = "*"


@dataclass(frozen=True)
class Candidate:
    """One downloadable version of a package."""
    name: str
    version: Version
    url: str
    is_sdist: bool = True
    build_tag: Tuple = ()
    tags: FrozenSet[Tag] = frozenset()

    @property
    def sort_key(self) -> Tuple:
        # Highest version first; build tag breaks ties; sdists preferred over wheels
        return (self.version, self.build_tag, self.is_sdist)


@dataclass(frozen=True)
class SourceOptions:
    """Which kinds of candidates are acceptable for a resolution."""
    sdist_only: bool = False  # building from source: wheels are never acceptable
    wheels_only: bool = False  # pre-built package: sdists are never acceptable
    allow_prereleases: bool = False
    supported_tags: Optional[FrozenSet[Tag]] = None  # None means this interpreter's tags

    def __post_init__(self) -> None:
        if self.sdist_only and self.wheels_only:
            raise ValueError("sdist_only and wheels_only are mutually exclusive")

    @property
    def variant(self) -> str:
        if self.wheels_only:
            return "prebuilt"
        if self.sdist_only:
            return "source"
        return "any"


class ResolutionProvider(Protocol):
    """Lists every available candidate for a requirement's package."""

    def find_candidates(self, requirement: Requirement) -> Iterable[Candidate]: ...


class StaticProvider:
    """Provider over a fixed in-memory table of versions (offline mirrors, tests)."""

    def __init__(self, packages: Optional[Dict[str, Sequence[Tuple[str, str]]]] = None):
        self._packages: Dict[str, List[Candidate]] = {}
        for name, versions in (packages or {}).items():
            for version, url in versions:
                self.add(name, version, url)

    def add(self, name: str, version: str, url: str, *, is_sdist: bool = True) -> None:
        canonical = canonicalize_name(name)
        self._packages.setdefault(canonical, []).append(
            Candidate(name=canonical, version=Version(version), url=url, is_sdist=is_sdist)
        )

    def find_candidates(self, requirement: Requirement) -> Iterable[Candidate]:
        return list(self._packages.get(requirement.canonical_name, ()))


class PyPIProvider:
    """Provider reading a PEP 691 JSON simple index (pypi.org or a mirror)."""

    def __init__(
        self,
        index_url: str = PYPI_SIMPLE_URL,
        *,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
    ):
        self.index_url = index_url.rstrip("/")
        self._session = session or requests.Session()
        self._retry = retry or RetryPolicy()
        self._timeout = timeout
        self._python_version = platform.python_version()

    def _fetch_project(self, name: str) -> Optional[dict]:
        url = f"{self.index_url}/{name}/"

        def _get():
            response = self._session.get(
                url,
                headers={"Accept": "application/vnd.pypi.simple.v1+json"},
                timeout=self._timeout,
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

        return self._retry.call(_get, name=f"GET {url}")

    def find_candidates(self, requirement: Requirement) -> Iterable[Candidate]:
        data = self._fetch_project(requirement.canonical_name)
        if data is None:
            return []
        candidates = []
        for entry in data.get("files", []):
            if entry.get("yanked"):
                continue
            if not self._python_ok(entry.get("requires-python")):
                continue
            candidate = _candidate_from_filename(entry.get("filename", ""), entry.get("url", ""))
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def _python_ok(self, requires_python: Optional[str]) -> bool:
        if not requires_python:
            return True
        try:
            return SpecifierSet(requires_python).contains(self._python_version, prereleases=True)
        except InvalidSpecifier:
            return True


class GitTagProvider:
    """Provider turning tags of a git repository into candidate versions.

    Tags are read with ``git ls-remote --tags``; a tag prefix (default
    ``v``) is stripped and tags that are not PEP 440 versions are skipped.
    Candidate URLs have the form ``git+<repo>@<tag>``.
    """

    def __init__(self, repo_url: str, *, tag_prefix: str = "v", retry: Optional[RetryPolicy] = None):
        self.repo_url = repo_url
        self.tag_prefix = tag_prefix
        self._retry = retry or RetryPolicy()

    def _list_tags(self) -> List[str]:
        def _ls_remote():
            result = subprocess.run(
                ["git", "ls-remote", "--tags", self.repo_url],
                check=True,
                capture_output=True,
                text=True,
            )
            return result.stdout

        output = self._retry.call(_ls_remote, name=f"git ls-remote {self.repo_url}")
        tags = []
        for line in output.splitlines():
            parts = line.split("\t", 1)
            if len(parts) != 2 or not parts[1].startswith("refs/tags/"):
                continue
            tag = parts[1][len("refs/tags/"):]
            if tag.endswith("^{}"):
                continue
            tags.append(tag)
        return tags

    def find_candidates(self, requirement: Requirement) -> Iterable[Candidate]:
        candidates = []
        for tag in self._list_tags():
            text = tag[len(self.tag_prefix):] if tag.startswith(self.tag_prefix) else tag
            try:
                version = Version(text)
            except InvalidVersion:
                logger.debug("%s: skipping non-version tag %s", requirement.name, tag)
                continue
            candidates.append(Candidate(
                name=requirement.canonical_name,
                version=version,
                url=f"git+{self.repo_url}@{tag}",
            ))
        return candidates


class ProviderRegistry:
    """Lookup table from package name (or the ``*`` default) to a provider."""

    def __init__(self, default: Optional[ResolutionProvider] = None):
        self._providers: Dict[str, ResolutionProvider] = {}
        if default is not None:
            self._providers[WILDCARD] = default

    def register(self, name: str, provider: ResolutionProvider) -> None:
        key = WILDCARD if name == WILDCARD else canonicalize_name(name)
        self._providers[key] = provider

    def get(self, name: str) -> ResolutionProvider:
        provider = self._providers.get(canonicalize_name(name)) or self._providers.get(WILDCARD)
        if provider is None:
            raise LookupError(f"No resolution provider registered for {name}")
        return provider


class VersionResolver:
    """Select a single concrete version and source location for a requirement."""

    def __init__(
        self,
        providers: ProviderRegistry,
        cache: Optional[ResolutionCache] = None,
        supported_tags: Optional[Iterable[Tag]] = None,
    ):
        self.providers = providers
        self.cache = cache if cache is not None else ResolutionCache()
        self._supported_tags = frozenset(supported_tags) if supported_tags is not None else None

    def _tags(self, options: SourceOptions) -> FrozenSet[Tag]:
        if options.supported_tags is not None:
            return options.supported_tags
        if self._supported_tags is None:
            self._supported_tags = frozenset(sys_tags())
        return self._supported_tags

    @staticmethod
    def cache_key(requirement: Requirement, options: SourceOptions) -> str:
        key = str(requirement)
        if options.variant != "any":
            key += f" [{options.variant}]"
        return key

    def resolve(
        self,
        requirement: Requirement,
        constraints: Optional[Constraints] = None,
        options: Optional[SourceOptions] = None,
    ) -> Tuple[str, Version]:
        """Return ``(url, version)`` of the best candidate.

        Raises:
            ResolutionError: If no candidate satisfies the requirement and constraints
        """
        options = options or SourceOptions()
        constraints = constraints or Constraints()
        key = self.cache_key(requirement, options)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("%s: resolved from cache to %s", requirement, cached[1])
            return cached

        if requirement.url and not requirement.url.startswith("git+"):
            # Direct reference: the caller already chose the location
            candidates = self._direct_reference_candidates(requirement)
        else:
            try:
                provider = self.providers.get(requirement.name)
            except LookupError as e:
                raise ResolutionError(str(requirement), str(e)) from e
            try:
                candidates = list(provider.find_candidates(requirement))
            except (requests.RequestException, subprocess.CalledProcessError, OSError, ValueError) as e:
                raise ResolutionError(str(requirement), f"provider lookup failed: {e}") from e

        best = self.select(requirement, candidates, constraints, options)
        logger.info("%s: resolved to %s (%s)", requirement, best.version, best.url)
        self.cache.put(key, best.url, best.version)
        return best.url, best.version

    def select(
        self,
        requirement: Requirement,
        candidates: Iterable[Candidate],
        constraints: Constraints,
        options: SourceOptions,
    ) -> Candidate:
        """Filter and rank candidates; return the best one."""
        candidates = list(candidates)
        if not candidates:
            raise ResolutionError(str(requirement), "no versions found")

        name = requirement.canonical_name
        allow_pre = allows_prereleases(requirement, constraints, options.allow_prereleases)
        tags = None
        viable = []
        for candidate in candidates:
            if candidate.version.is_prerelease and not allow_pre:
                continue
            if not requirement.contains(candidate.version, prereleases=True):
                continue
            if not constraints.allows(name, candidate.version, prereleases=True):
                continue
            if candidate.is_sdist:
                if options.wheels_only:
                    continue
            else:
                if options.sdist_only:
                    continue
                if tags is None:
                    tags = self._tags(options)
                if candidate.tags and not (candidate.tags & tags):
                    continue
            viable.append(candidate)

        if not viable:
            available = ", ".join(sorted({str(c.version) for c in candidates}, key=Version))
            reason = f"no candidate matches (available: {available})"
            if constraints.get(name) is not None:
                reason += f"; constrained by {constraints.describe(name)}"
            raise ResolutionError(str(requirement), reason)

        viable.sort(key=lambda c: c.sort_key, reverse=True)
        return viable[0]

    def _direct_reference_candidates(self, requirement: Requirement) -> List[Candidate]:
        filename = requirement.url.rsplit("/", 1)[-1].split("#", 1)[0]
        candidate = _candidate_from_filename(filename, requirement.url)
        if candidate is None:
            raise ResolutionError(
                str(requirement), f"cannot determine version from direct reference {requirement.url}"
            )
        return [candidate]


def _candidate_from_filename(filename: str, url: str) -> Optional[Candidate]:
    """Build a candidate from a wheel or sdist filename; None if unparsable."""
    try:
        if filename.endswith(".whl"):
            name, version, build_tag, tags = parse_wheel_filename(filename)
            return Candidate(
                name=str(name),
                version=version,
                url=url,
                is_sdist=False,
                build_tag=tuple(build_tag),
                tags=frozenset(tags),
            )
        if filename.endswith((".tar.gz", ".zip")):
            name, version = parse_sdist_filename(filename)
            return Candidate(name=str(name), version=version, url=url)
    except (InvalidWheelFilename, InvalidSdistFilename, InvalidVersion):
        logger.debug("skipping unparsable distribution filename %s", filename)
    return None


def allows_prereleases(requirement: Requirement, constraints: Constraints, allow: bool = False) -> bool:
    """Pre-releases qualify only when allowed, or named by the requirement or its constraint."""
    constraint_spec = constraints.get(requirement.canonical_name)
    return (
        allow
        or bool(requirement.specifier_set.prereleases)
        or bool(constraint_spec is not None and constraint_spec.prereleases)
    )
