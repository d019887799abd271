"""Tests for the default acquisition, extraction and build adapters."""

import io
import subprocess
import tarfile
import zipfile
from pathlib import Path

import pytest
import requests

from fromsource._internal.retry import NO_RETRY
from fromsource.adapters.builder import PipArtifactBuilder
from fromsource.adapters.metadata import DEFAULT_BUILD_SYSTEM, PyprojectDependencyExtractor
from fromsource.adapters.source import HttpSourceAcquisition, PassthroughPreparation
from fromsource.errors import AcquisitionError, BuildFailure, PreparationError
from fromsource.kernel.collaborators import BuildEnvironment
from fromsource.kernel.requirements import Requirement

METADATA = """Metadata-Version: 2.1
Name: demo
Version: 1.0
Requires-Dist: requests>=2.0
Requires-Dist: pytest; extra == "test"

Long description with Requires-Dist: not-a-header
"""


def _make_sdist(path: Path, root: str, files: dict) -> Path:
    with tarfile.open(path, "w:gz") as tar:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def _make_wheel(path: Path, dist_info: str, metadata: str) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("demo/__init__.py", "")
        zf.writestr(f"{dist_info}/METADATA", metadata)
    return path


class FakeResponse:
    def __init__(self, status_code=200, body=b""):
        self.status_code = status_code
        self._body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start:start + chunk_size]


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requested = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        return self.responses[url]


def test_install_deps_from_wheel_metadata(tmp_path):
    wheel = _make_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo-1.0.dist-info", METADATA)
    deps = PyprojectDependencyExtractor().install_deps(wheel)
    assert deps == {Requirement.parse("requests>=2.0"), Requirement.parse('pytest; extra == "test"')}


def test_install_deps_from_sdist_and_tree(tmp_path):
    sdist = _make_sdist(tmp_path / "demo-1.0.tar.gz", "demo-1.0", {"PKG-INFO": METADATA})
    extractor = PyprojectDependencyExtractor()
    assert Requirement.parse("requests>=2.0") in extractor.install_deps(sdist)

    tree = tmp_path / "tree"
    tree.mkdir()
    (tree / "PKG-INFO").write_text(METADATA, encoding="utf-8")
    assert len(extractor.install_deps(tree)) == 2


def test_install_deps_without_metadata(tmp_path, caplog):
    wheel = tmp_path / "demo-1.0-py3-none-any.whl"
    with zipfile.ZipFile(wheel, "w") as zf:
        zf.writestr("demo/__init__.py", "")
    assert PyprojectDependencyExtractor().install_deps(wheel) == set()
    assert "no core metadata" in caplog.text


def test_sdist_without_requires_dist_asks_the_backend(tmp_path, monkeypatch):
    pkg_info = "Metadata-Version: 2.1\nName: demo\nVersion: 1.0\n"
    sdist = _make_sdist(tmp_path / "demo-1.0.tar.gz", "demo-1.0", {"PKG-INFO": pkg_info, "setup.py": ""})
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        dist_info = Path(cmd[-1]) / "demo-1.0.dist-info"
        dist_info.mkdir()
        (dist_info / "METADATA").write_text(METADATA, encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="demo-1.0.dist-info\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    deps = PyprojectDependencyExtractor().install_deps(sdist)
    assert Requirement.parse("requests>=2.0") in deps
    cmd, kwargs = calls[0]
    assert cmd[-2] == DEFAULT_BUILD_SYSTEM["build-backend"]
    assert kwargs["cwd"].name == "demo-1.0"


def test_static_metadata_without_requirements_is_trusted(tmp_path, monkeypatch):
    pkg_info = "Metadata-Version: 2.2\nName: demo\nVersion: 1.0\n"
    sdist = _make_sdist(tmp_path / "demo-1.0.tar.gz", "demo-1.0", {"PKG-INFO": pkg_info})

    def fail_run(cmd, **kwargs):
        raise AssertionError("backend should not be called")

    monkeypatch.setattr(subprocess, "run", fail_run)
    assert PyprojectDependencyExtractor().install_deps(sdist) == set()


def test_dynamic_requirements_ask_the_backend(tmp_path, monkeypatch):
    tree = tmp_path / "demo-1.0"
    tree.mkdir()
    (tree / "PKG-INFO").write_text(
        "Metadata-Version: 2.2\nName: demo\nVersion: 1.0\nDynamic: Requires-Dist\n", encoding="utf-8",
    )
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 4, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert PyprojectDependencyExtractor().install_deps(tree) == set()
    assert len(calls) == 1


def test_backend_without_metadata_hook_warns(tmp_path, monkeypatch, caplog):
    pkg_info = "Metadata-Version: 2.1\nName: demo\nVersion: 1.0\n"
    sdist = _make_sdist(tmp_path / "demo-1.0.tar.gz", "demo-1.0", {"PKG-INFO": pkg_info})
    monkeypatch.setattr(
        subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 4, stdout="", stderr=""),
    )
    assert PyprojectDependencyExtractor().install_deps(sdist) == set()
    assert "no Requires-Dist" in caplog.text


def test_failing_metadata_hook_raises(tmp_path, monkeypatch):
    pkg_info = "Metadata-Version: 2.1\nName: demo\nVersion: 1.0\n"
    sdist = _make_sdist(tmp_path / "demo-1.0.tar.gz", "demo-1.0", {"PKG-INFO": pkg_info})
    monkeypatch.setattr(
        subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Traceback: boom"),
    )
    with pytest.raises(PreparationError, match="boom"):
        PyprojectDependencyExtractor().install_deps(sdist)


def test_build_system_from_pyproject(tmp_path):
    (tmp_path / "pyproject.toml").write_text(
        '[build-system]\nrequires = ["flit_core>=3.2,<4"]\nbuild-backend = "flit_core.buildapi"\n',
        encoding="utf-8",
    )
    extractor = PyprojectDependencyExtractor()
    assert extractor.build_system(tmp_path)["build-backend"] == "flit_core.buildapi"
    assert extractor.build_system_deps(tmp_path) == {Requirement.parse("flit_core<4,>=3.2")}


def test_build_system_defaults_without_pyproject(tmp_path):
    extractor = PyprojectDependencyExtractor()
    assert extractor.build_system(tmp_path) == DEFAULT_BUILD_SYSTEM
    assert extractor.build_system_deps(tmp_path) == {Requirement.parse("setuptools>=40.8.0")}


def test_invalid_pyproject(tmp_path):
    (tmp_path / "pyproject.toml").write_text("[build-system\n", encoding="utf-8")
    with pytest.raises(PreparationError, match="invalid"):
        PyprojectDependencyExtractor().build_system_deps(tmp_path)


def test_invalid_build_requirement(tmp_path):
    (tmp_path / "pyproject.toml").write_text('[build-system]\nrequires = ["not a req!!"]\n', encoding="utf-8")
    with pytest.raises(PreparationError, match="invalid requirement"):
        PyprojectDependencyExtractor().build_system_deps(tmp_path)


def test_backend_hook_output_is_parsed(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout='noise\n["wheel", "cython>=3"]\n', stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    deps = PyprojectDependencyExtractor(python="py").build_backend_deps(tmp_path)
    assert deps == {Requirement.parse("wheel"), Requirement.parse("cython>=3")}
    cmd, kwargs = calls[0]
    assert cmd[0] == "py"
    assert cmd[-2:] == ["setuptools.build_meta:__legacy__", "get_requires_for_build_wheel"]
    assert kwargs["cwd"] == tmp_path


def test_missing_backend_is_not_fatal(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 3, stdout="", stderr="No module named x"),
    )
    assert PyprojectDependencyExtractor().build_sdist_deps(tmp_path) == set()


def test_failing_hook_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Traceback: boom"),
    )
    with pytest.raises(PreparationError, match="boom"):
        PyprojectDependencyExtractor().build_sdist_deps(tmp_path)


def test_acquire_downloads_and_unpacks(tmp_path):
    archive = _make_sdist(tmp_path / "src.tar.gz", "demo-1.0", {"setup.py": "", "PKG-INFO": METADATA})
    url = "https://files.example.invalid/packages/demo-1.0.tar.gz"
    session = FakeSession({url: FakeResponse(body=archive.read_bytes())})
    acquisition = HttpSourceAcquisition(tmp_path / "downloads", tmp_path / "work", session=session, retry=NO_RETRY)

    root = acquisition.acquire("demo", "1.0", url)
    assert root == tmp_path / "work" / "demo-1.0" / "demo-1.0"
    assert (root / "setup.py").exists()
    assert (tmp_path / "downloads" / "demo-1.0.tar.gz").exists()

    # A second acquisition reuses the download
    acquisition.acquire("demo", "1.0", url)
    assert session.requested == [url]


def test_acquire_returns_wheels_unchanged(tmp_path):
    wheel = _make_wheel(tmp_path / "w.whl", "demo-1.0.dist-info", METADATA)
    url = "https://files.example.invalid/demo-1.0-py3-none-any.whl"
    session = FakeSession({url: FakeResponse(body=wheel.read_bytes())})
    acquisition = HttpSourceAcquisition(tmp_path / "downloads", tmp_path / "work", session=session, retry=NO_RETRY)
    assert acquisition.acquire("demo", "1.0", url) == tmp_path / "downloads" / "demo-1.0-py3-none-any.whl"


def test_acquire_errors(tmp_path):
    url = "https://files.example.invalid/demo-1.0.tar.gz"
    session = FakeSession({url: FakeResponse(status_code=404)})
    acquisition = HttpSourceAcquisition(tmp_path / "downloads", tmp_path / "work", session=session, retry=NO_RETRY)
    with pytest.raises(AcquisitionError, match="could not download"):
        acquisition.acquire("demo", "1.0", url)
    with pytest.raises(AcquisitionError, match="no source location"):
        acquisition.acquire("demo", "1.0", "")


def test_acquire_clones_git_tags(tmp_path, monkeypatch):
    commands = []

    def fake_run(cmd, **kwargs):
        commands.append(cmd)
        Path(cmd[-1]).mkdir(parents=True)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    acquisition = HttpSourceAcquisition(tmp_path / "downloads", tmp_path / "work", retry=NO_RETRY)
    root = acquisition.acquire("demo", "1.0", "git+https://git.example.invalid/demo.git@v1.0")
    assert root == tmp_path / "work" / "demo-1.0"
    assert commands == [[
        "git", "clone", "--depth", "1", "--branch", "v1.0",
        "https://git.example.invalid/demo.git", str(root),
    ]]


def test_preparation_requires_existing_tree(tmp_path):
    assert PassthroughPreparation().prepare(tmp_path) == tmp_path
    with pytest.raises(PreparationError):
        PassthroughPreparation().prepare(tmp_path / "missing")


def test_sdist_is_repacked_from_prepared_tree(tmp_path):
    tree = tmp_path / "demo-1.0"
    tree.mkdir()
    (tree / "setup.py").write_text("", encoding="utf-8")
    sdist = PipArtifactBuilder(tmp_path / "sdists").build_source_distribution(tree)
    assert sdist == tmp_path / "sdists" / "demo-1.0.tar.gz"
    with tarfile.open(sdist) as tar:
        members = {member.name: member for member in tar.getmembers()}
    assert "demo-1.0/setup.py" in members
    assert members["demo-1.0/setup.py"].uid == 0


def _env(tmp_path):
    return BuildEnvironment(
        name="demo",
        version="1.0",
        work_dir=tmp_path / "work" / "demo-1.0",
        artifacts_dir=tmp_path / "wheels",
        build_requirements=(),
    )


def test_build_artifact_runs_pip_wheel(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        wheel_dir = Path(cmd[cmd.index("--wheel-dir") + 1])
        (wheel_dir / "demo-1.0-py3-none-any.whl").write_bytes(b"")
        return subprocess.CompletedProcess(cmd, 0, stdout="built", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    env = _env(tmp_path)
    wheel = PipArtifactBuilder(tmp_path / "sdists", python="py").build_artifact(tmp_path / "demo-1.0.tar.gz", env)
    assert wheel == tmp_path / "wheels" / "demo-1.0-py3-none-any.whl"
    assert wheel.exists()
    assert (env.work_dir / "build.log").read_text(encoding="utf-8") == "built"


def test_build_artifact_failure_includes_output(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="error: no compiler"),
    )
    with pytest.raises(BuildFailure, match="no compiler"):
        PipArtifactBuilder(tmp_path / "sdists").build_artifact(tmp_path / "demo-1.0.tar.gz", _env(tmp_path))


def test_build_artifact_without_matching_wheel(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        wheel_dir = Path(cmd[cmd.index("--wheel-dir") + 1])
        (wheel_dir / "other-2.0-py3-none-any.whl").write_bytes(b"")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(BuildFailure, match="no wheel"):
        PipArtifactBuilder(tmp_path / "sdists").build_artifact(tmp_path / "demo-1.0.tar.gz", _env(tmp_path))
