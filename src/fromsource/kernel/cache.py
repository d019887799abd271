"""Two-tier build cache: in-run resolution memo plus artifact caches.

The resolution tier never expires within a run. The artifact tier is checked
before any build is attempted; a hit lets the bootstrapper skip acquiring,
preparing and building the package entirely. Artifact cache failures are
never fatal: they are logged and treated as misses.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

import requests
from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)
from packaging.version import Version

from .._internal.canonical_json import canonical_dumps
from .._internal.retry import RetryPolicy
from ..errors import CacheError

logger = logging.getLogger(__name__)

WHEEL = "wheel"
SDIST = "sdist"


class ResolutionCache:
    """Requirement string -> (url, version), shared by every resolver call in a run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, Version]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Tuple[str, Version]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(self, key: str, url: str, version: Version) -> None:
        with self._lock:
            self._entries.setdefault(key, (url, version))

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@runtime_checkable
class ArtifactCache(Protocol):
    """Store of finished build artifacts keyed by (name, version, variant)."""

    def has_artifact(self, name: str, version: str, variant: str = WHEEL) -> bool: ...

    def fetch_artifact(self, name: str, version: str, variant: str = WHEEL) -> Path: ...

    def store_artifact(self, name: str, version: str, variant: str, path: Path) -> Path: ...


class LocalArtifactCache:
    """Artifact cache on local disk.

    Layout: ``<root>/<variant>/<name>/<version>/<filename>`` plus an
    ``index.json`` mapping variant -> name -> version -> filename. The index
    is rewritten atomically under a lock so parallel workers can store
    concurrently.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._index_path = self.root / "index.json"
        self._lock = threading.Lock()
        self._index: Dict[str, Dict[str, Dict[str, str]]] = self._load_index()

    def _load_index(self) -> Dict[str, Dict[str, Dict[str, str]]]:
        if not self._index_path.exists():
            return {}
        try:
            return json.loads(self._index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable cache index %s: %s", self._index_path, e)
            return {}

    def _write_index(self) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".index-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(canonical_dumps(self._index, indent=2) + "\n")
            os.replace(tmp_name, self._index_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _filename(self, name: str, version: str, variant: str) -> Optional[str]:
        return self._index.get(variant, {}).get(canonicalize_name(name), {}).get(version)

    def has_artifact(self, name: str, version: str, variant: str = WHEEL) -> bool:
        with self._lock:
            filename = self._filename(name, version, variant)
        if filename is None:
            return False
        return (self.root / variant / canonicalize_name(name) / version / filename).exists()

    def fetch_artifact(self, name: str, version: str, variant: str = WHEEL) -> Path:
        with self._lock:
            filename = self._filename(name, version, variant)
        if filename is None:
            raise CacheError(f"{variant} for {name}=={version} is not cached")
        path = self.root / variant / canonicalize_name(name) / version / filename
        if not path.exists():
            raise CacheError(f"cache index lists {path} but the file is missing")
        return path

    def store_artifact(self, name: str, version: str, variant: str, path: Path) -> Path:
        path = Path(path)
        dest_dir = self.root / variant / canonicalize_name(name) / version
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            dest = dest_dir / path.name
            if path.resolve() != dest.resolve():
                shutil.copy2(path, dest)
            with self._lock:
                self._index.setdefault(variant, {}).setdefault(
                    canonicalize_name(name), {}
                )[version] = path.name
                self._write_index()
        except OSError as e:
            raise CacheError(f"could not store {path} in {self.root}: {e}") from e
        return dest


class RemoteArtifactCache:
    """Read-only artifact cache backed by a PEP 691 simple index (a wheel server)."""

    def __init__(
        self,
        base_url: str,
        download_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.download_dir = Path(download_dir)
        self._session = session or requests.Session()
        self._retry = retry or RetryPolicy()
        self._timeout = timeout

    def _find(self, name: str, version: str, variant: str) -> Optional[Tuple[str, str]]:
        """Return (filename, url) of a matching file on the server, or None."""
        url = f"{self.base_url}/{canonicalize_name(name)}/"

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

        try:
            data = self._retry.call(_get, name=f"GET {url}")
        except (requests.RequestException, ValueError) as e:
            raise CacheError(f"remote cache lookup failed for {name}: {e}") from e
        if not data:
            return None
        wanted = Version(version)
        for entry in data.get("files", []):
            filename = entry.get("filename", "")
            try:
                if variant == WHEEL and filename.endswith(".whl"):
                    found = parse_wheel_filename(filename)[1]
                elif variant == SDIST and not filename.endswith(".whl"):
                    found = parse_sdist_filename(filename)[1]
                else:
                    continue
            except (InvalidWheelFilename, InvalidSdistFilename):
                continue
            if found == wanted:
                return filename, entry["url"]
        return None

    def has_artifact(self, name: str, version: str, variant: str = WHEEL) -> bool:
        return self._find(name, version, variant) is not None

    def fetch_artifact(self, name: str, version: str, variant: str = WHEEL) -> Path:
        match = self._find(name, version, variant)
        if match is None:
            raise CacheError(f"{variant} for {name}=={version} is not on {self.base_url}")
        filename, url = match
        dest = self.download_dir / filename
        if dest.exists():
            return dest

        def _download():
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                self.download_dir.mkdir(parents=True, exist_ok=True)
                tmp = dest.with_suffix(dest.suffix + ".part")
                with open(tmp, "wb") as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
                os.replace(tmp, dest)

        try:
            self._retry.call(_download, name=f"download {url}")
        except (requests.RequestException, OSError) as e:
            raise CacheError(f"could not download {url}: {e}") from e
        return dest

    def store_artifact(self, name: str, version: str, variant: str, path: Path) -> Path:
        raise CacheError(f"remote cache {self.base_url} is read-only")


class BuildCache:
    """Resolution memo plus an ordered list of artifact cache tiers."""

    def __init__(self, artifact_caches: Optional[List[ArtifactCache]] = None):
        self.resolutions = ResolutionCache()
        self.artifact_caches: List[ArtifactCache] = list(artifact_caches or [])

    def has_artifact(self, name: str, version: str, variant: str = WHEEL) -> bool:
        for cache in self.artifact_caches:
            try:
                if cache.has_artifact(name, version, variant):
                    return True
            except CacheError as e:
                logger.warning("%s: cache lookup failed, treating as miss: %s", name, e)
        return False

    def fetch_artifact(self, name: str, version: str, variant: str = WHEEL) -> Optional[Path]:
        """Return the cached artifact location, or None on a miss."""
        for cache in self.artifact_caches:
            try:
                if cache.has_artifact(name, version, variant):
                    path = cache.fetch_artifact(name, version, variant)
                    logger.info("%s: found cached %s %s", name, variant, path.name)
                    return path
            except CacheError as e:
                logger.warning("%s: cache fetch failed, falling back to rebuild: %s", name, e)
        return None

    def store_artifact(self, name: str, version: str, variant: str, path: Path) -> Optional[Path]:
        """Store ``path`` in the first cache tier that accepts it."""
        for cache in self.artifact_caches:
            try:
                return cache.store_artifact(name, version, variant, path)
            except CacheError as e:
                logger.debug("%s: cache tier rejected store: %s", name, e)
        return None
