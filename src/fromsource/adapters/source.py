"""Default source acquisition and preparation.

Acquisition downloads a distribution (``https://``) or clones a tag
(``git+<repo>@<tag>``), keeps the download under ``sdists-repo/downloads`` and
unpacks source archives into the work directory. Pre-built wheels are
downloaded and returned as-is.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from .._internal.retry import RetryPolicy
from ..errors import AcquisitionError, PreparationError

logger = logging.getLogger(__name__)


class HttpSourceAcquisition:
    """Download and unpack sources over HTTP(S), or clone git tags."""

    def __init__(
        self,
        download_dir: Path,
        work_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 60.0,
    ):
        self.download_dir = Path(download_dir)
        self.work_dir = Path(work_dir)
        self._session = session or requests.Session()
        self._retry = retry or RetryPolicy()
        self._timeout = timeout

    def acquire(self, name: str, version: str, source_url: str) -> Path:
        if not source_url:
            raise AcquisitionError(f"{name}=={version} has no source location")
        if source_url.startswith("git+"):
            return self._clone(name, version, source_url[len("git+"):])

        archive = self._download(source_url)
        if archive.name.endswith(".whl"):
            return archive
        return self._unpack(archive, self.work_dir / f"{name}-{version}")

    def _download(self, url: str) -> Path:
        filename = Path(urlparse(url).path).name
        if not filename:
            raise AcquisitionError(f"cannot determine a file name from {url}")
        dest = self.download_dir / filename
        if dest.exists():
            logger.debug("%s: already downloaded", filename)
            return dest

        def _get():
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                self.download_dir.mkdir(parents=True, exist_ok=True)
                tmp = dest.with_name(dest.name + ".part")
                with open(tmp, "wb") as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
                os.replace(tmp, dest)

        try:
            self._retry.call(_get, name=f"download {url}")
        except (requests.RequestException, OSError) as e:
            raise AcquisitionError(f"could not download {url}: {e}") from e
        logger.info("downloaded %s", filename)
        return dest

    def _unpack(self, archive: Path, dest: Path) -> Path:
        if dest.exists():
            shutil.rmtree(dest)
        dest.mkdir(parents=True)
        try:
            if archive.name.endswith(".zip"):
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(dest)
            else:
                with tarfile.open(archive, "r:*") as tar:
                    tar.extractall(dest, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise AcquisitionError(f"could not unpack {archive.name}: {e}") from e

        # Source archives hold a single top-level directory
        entries = list(dest.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return dest

    def _clone(self, name: str, version: str, spec: str) -> Path:
        repo, _, ref = spec.rpartition("@")
        if not repo:
            repo, ref = spec, ""
        dest = self.work_dir / f"{name}-{version}"
        if dest.exists():
            shutil.rmtree(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["git", "clone", "--depth", "1"]
        if ref:
            cmd += ["--branch", ref]
        cmd += [repo, str(dest)]

        def _run():
            subprocess.run(cmd, check=True, capture_output=True, text=True)

        try:
            self._retry.call(_run, name=f"git clone {repo}")
        except subprocess.CalledProcessError as e:
            raise AcquisitionError(f"git clone of {repo} failed: {e.stderr.strip()}") from e
        return dest


class PassthroughPreparation:
    """Preparation step for sources that need no patches or vendoring."""

    def prepare(self, source_root: Path) -> Path:
        if not Path(source_root).exists():
            raise PreparationError(f"source tree {source_root} does not exist")
        return Path(source_root)
