"""Default dependency extractor.

Build-system requirements come from ``pyproject.toml``. Build-backend and
build-sdist requirements come from the PEP 517 ``get_requires_for_build_*``
hooks, run in a subprocess from the source tree. Install requirements are
read from the artifact's core metadata (wheel ``METADATA`` or sdist
``PKG-INFO``). Sdist metadata only counts when it declares its requirements
statically; otherwise the backend's ``prepare_metadata_for_build_wheel``
hook is asked.
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import tarfile
import tempfile
import tomllib
import zipfile
from email.parser import HeaderParser
from pathlib import Path
from typing import Iterable, List, Optional, Set

from packaging.version import InvalidVersion, Version

from ..errors import PreparationError
from ..kernel.requirements import Requirement

logger = logging.getLogger(__name__)

# PEP 517 fallback for projects without a [build-system] table
DEFAULT_BUILD_SYSTEM = {
    "requires": ["setuptools>=40.8.0"],
    "build-backend": "setuptools.build_meta:__legacy__",
}

# Exit codes the hook runners use when the backend (or an optional hook) is missing
_BACKEND_MISSING = 3
_HOOK_MISSING = 4

_HOOK_RUNNER = """
import importlib, json, sys
module_name, _, attr = sys.argv[1].partition(":")
try:
    backend = importlib.import_module(module_name)
except ImportError as e:
    print(e, file=sys.stderr)
    sys.exit(%d)
for part in filter(None, attr.split(".")):
    backend = getattr(backend, part)
hook = getattr(backend, sys.argv[2], None)
print(json.dumps(hook({}) if hook is not None else []))
""" % _BACKEND_MISSING

_METADATA_RUNNER = """
import importlib, sys
module_name, _, attr = sys.argv[1].partition(":")
try:
    backend = importlib.import_module(module_name)
except ImportError as e:
    print(e, file=sys.stderr)
    sys.exit(%d)
for part in filter(None, attr.split(".")):
    backend = getattr(backend, part)
hook = getattr(backend, "prepare_metadata_for_build_wheel", None)
if hook is None:
    sys.exit(%d)
print(hook(sys.argv[2], {}))
""" % (_BACKEND_MISSING, _HOOK_MISSING)


def _parse_all(texts: Iterable[str], origin: str) -> Set[Requirement]:
    reqs = set()
    for text in texts:
        try:
            reqs.add(Requirement.parse(text))
        except ValueError as e:
            raise PreparationError(f"invalid requirement {text!r} in {origin}: {e}") from e
    return reqs


class PyprojectDependencyExtractor:
    """Read dependencies from source trees and built artifacts."""

    def __init__(self, python: Optional[str] = None, timeout: float = 600.0):
        self.python = python or sys.executable
        self.timeout = timeout

    def build_system(self, prepared_root: Path) -> dict:
        pyproject = Path(prepared_root) / "pyproject.toml"
        if not pyproject.exists():
            return dict(DEFAULT_BUILD_SYSTEM)
        try:
            with open(pyproject, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise PreparationError(f"invalid {pyproject}: {e}") from e
        table = dict(DEFAULT_BUILD_SYSTEM)
        table.update(data.get("build-system", {}))
        return table

    def build_system_deps(self, prepared_root: Path) -> Set[Requirement]:
        requires = self.build_system(prepared_root).get("requires", [])
        return _parse_all(requires, f"{prepared_root}/pyproject.toml")

    def build_backend_deps(self, prepared_root: Path) -> Set[Requirement]:
        return self._run_hook(prepared_root, "get_requires_for_build_wheel")

    def build_sdist_deps(self, prepared_root: Path) -> Set[Requirement]:
        return self._run_hook(prepared_root, "get_requires_for_build_sdist")

    def install_deps(self, artifact: Path) -> Set[Requirement]:
        artifact = Path(artifact)
        is_wheel = artifact.name.endswith(".whl")
        if artifact.is_dir():
            raw = self._read_tree_metadata(artifact)
        elif is_wheel:
            raw = self._read_wheel_metadata(artifact)
        else:
            raw = self._read_sdist_metadata(artifact)
        if raw is None and is_wheel:
            logger.warning("%s: no core metadata found, assuming no install dependencies", artifact.name)
            return set()
        headers = HeaderParser().parsestr(raw) if raw is not None else None
        if not is_wheel and not _declares_requirements(headers):
            raw = self._metadata_from_backend(artifact)
            if raw is None:
                logger.warning(
                    "%s: PKG-INFO lists no Requires-Dist and the backend provided no metadata, "
                    "assuming no install dependencies",
                    artifact.name,
                )
                return set()
            headers = HeaderParser().parsestr(raw)
        return _parse_all(headers.get_all("Requires-Dist") or [], artifact.name)

    def _call_backend(
        self,
        prepared_root: Path,
        runner: str,
        args: List[str],
        hook: str,
    ) -> Optional[subprocess.CompletedProcess]:
        """Run a hook runner for the tree's backend; None when the backend is not importable."""
        backend = self.build_system(prepared_root).get("build-backend")
        if not backend:
            return None
        cmd = [self.python, "-c", runner, backend, *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=prepared_root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise PreparationError(f"{hook} timed out for {prepared_root}") from e
        if proc.returncode == _BACKEND_MISSING:
            logger.warning(
                "%s: backend %s is not importable, skipping %s",
                prepared_root.name, backend, hook,
            )
            return None
        return proc

    def _run_hook(self, prepared_root: Path, hook: str) -> Set[Requirement]:
        proc = self._call_backend(prepared_root, _HOOK_RUNNER, [hook], hook)
        if proc is None:
            return set()
        if proc.returncode != 0:
            raise PreparationError(f"{hook} failed for {prepared_root}:\n{proc.stderr.strip()}")
        try:
            requires: List[str] = json.loads(proc.stdout.strip().splitlines()[-1])
        except (IndexError, json.JSONDecodeError) as e:
            raise PreparationError(f"{hook} returned unexpected output for {prepared_root}") from e
        return _parse_all(requires, f"{prepared_root.name}:{hook}")

    def _metadata_from_backend(self, artifact: Path) -> Optional[str]:
        """Core metadata from ``prepare_metadata_for_build_wheel``, or None."""
        hook = "prepare_metadata_for_build_wheel"
        with tempfile.TemporaryDirectory(prefix="fromsource-metadata-") as tmp:
            tmp_dir = Path(tmp)
            root = artifact if artifact.is_dir() else self._unpack_sdist(artifact, tmp_dir / "src")
            if root is None:
                return None
            out_dir = tmp_dir / "metadata"
            out_dir.mkdir()
            proc = self._call_backend(root, _METADATA_RUNNER, [str(out_dir)], hook)
            if proc is None:
                return None
            if proc.returncode == _HOOK_MISSING:
                logger.debug("%s: backend has no %s hook", artifact.name, hook)
                return None
            if proc.returncode != 0:
                raise PreparationError(f"{hook} failed for {artifact.name}:\n{proc.stderr.strip()}")
            lines = proc.stdout.strip().splitlines()
            metadata = out_dir / lines[-1].strip() / "METADATA" if lines else None
            if metadata is None or not metadata.is_file():
                raise PreparationError(f"{hook} returned unexpected output for {artifact.name}")
            return metadata.read_text(encoding="utf-8")

    @staticmethod
    def _unpack_sdist(sdist: Path, dest: Path) -> Optional[Path]:
        try:
            with tarfile.open(sdist, "r:*") as tar:
                tar.extractall(dest, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise PreparationError(f"cannot unpack {sdist.name}: {e}") from e
        tops = [p for p in dest.iterdir() if p.is_dir()]
        return tops[0] if len(tops) == 1 else None

    @staticmethod
    def _read_wheel_metadata(wheel: Path) -> Optional[str]:
        with zipfile.ZipFile(wheel) as zf:
            for name in zf.namelist():
                parts = name.split("/")
                if len(parts) == 2 and parts[0].endswith(".dist-info") and parts[1] == "METADATA":
                    return zf.read(name).decode("utf-8")
        return None

    @staticmethod
    def _read_sdist_metadata(sdist: Path) -> Optional[str]:
        with tarfile.open(sdist, "r:*") as tar:
            for member in tar.getmembers():
                parts = member.name.split("/")
                if len(parts) == 2 and parts[1] == "PKG-INFO":
                    f = tar.extractfile(member)
                    if f is not None:
                        return f.read().decode("utf-8")
        return None

    @staticmethod
    def _read_tree_metadata(root: Path) -> Optional[str]:
        pkg_info = root / "PKG-INFO"
        if pkg_info.exists():
            return pkg_info.read_text(encoding="utf-8")
        return None


def _declares_requirements(headers) -> bool:
    """True when core metadata can be trusted for install requirements.

    Requirements listed in the metadata always count. An empty list only
    counts from Metadata-Version 2.2 on, and only when ``Requires-Dist`` is
    not marked ``Dynamic``.
    """
    if headers is None:
        return False
    if headers.get_all("Requires-Dist"):
        return True
    try:
        version = Version(headers.get("Metadata-Version", "1.0"))
    except InvalidVersion:
        return False
    dynamic = {field.strip().lower() for field in headers.get_all("Dynamic") or []}
    return version >= Version("2.2") and "requires-dist" not in dynamic
