"""Default artifact builder.

Source distributions are re-packed from the prepared tree so that patches
applied during preparation are part of the sdist. Final artifacts are wheels
built by ``pip wheel`` with build isolation, where the isolated build
environment may only install from the local wheels repository. That keeps
every build-time tool built from source as well.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tarfile
from pathlib import Path
from typing import List, Optional

from packaging.utils import canonicalize_name, parse_wheel_filename

from ..errors import BuildFailure
from ..kernel.collaborators import BuildEnvironment

logger = logging.getLogger(__name__)


def _reset_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


class PipArtifactBuilder:
    """Build sdists with tarfile and wheels with ``pip wheel``."""

    def __init__(self, sdist_dir: Path, python: Optional[str] = None, timeout: float = 3600.0):
        self.sdist_dir = Path(sdist_dir)
        self.python = python or sys.executable
        self.timeout = timeout

    def build_source_distribution(self, prepared_root: Path) -> Path:
        prepared_root = Path(prepared_root)
        self.sdist_dir.mkdir(parents=True, exist_ok=True)
        dest = self.sdist_dir / f"{prepared_root.name}.tar.gz"
        tmp = dest.with_name(dest.name + ".part")
        with tarfile.open(tmp, "w:gz") as tar:
            tar.add(prepared_root, arcname=prepared_root.name, filter=_reset_owner)
        os.replace(tmp, dest)
        logger.debug("wrote %s", dest)
        return dest

    def build_artifact(self, sdist: Path, env: BuildEnvironment) -> Path:
        out_dir = env.work_dir / "dist"
        if out_dir.exists():
            shutil.rmtree(out_dir)
        out_dir.mkdir(parents=True)
        env.artifacts_dir.mkdir(parents=True, exist_ok=True)

        cmd = [
            self.python, "-m", "pip", "wheel",
            "--no-deps",
            "--no-index",
            "--find-links", str(env.artifacts_dir.resolve()),
            "--wheel-dir", str(out_dir.resolve()),
            str(Path(sdist).resolve()),
        ]
        log_file = env.work_dir / "build.log"
        logger.debug("%s==%s: running %s", env.name, env.version, " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=env.work_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise BuildFailure(f"building {env.name}=={env.version} timed out") from e
        log_file.write_text(proc.stdout + proc.stderr, encoding="utf-8")
        if proc.returncode != 0:
            tail = "\n".join((proc.stdout + proc.stderr).strip().splitlines()[-20:])
            raise BuildFailure(f"pip wheel failed for {env.name}=={env.version} (see {log_file}):\n{tail}")

        wheel = self._find_wheel(out_dir, env.name, env.version)
        dest = env.artifacts_dir / wheel.name
        shutil.move(str(wheel), dest)
        return dest

    @staticmethod
    def _find_wheel(out_dir: Path, name: str, version: str) -> Path:
        found: List[Path] = []
        for path in sorted(out_dir.glob("*.whl")):
            wheel_name, wheel_version, _, _ = parse_wheel_filename(path.name)
            if canonicalize_name(wheel_name) == canonicalize_name(name) and str(wheel_version) == version:
                found.append(path)
        if not found:
            raise BuildFailure(f"pip wheel produced no wheel for {name}=={version} in {out_dir}")
        return found[0]
