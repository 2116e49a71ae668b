"""Pytest fixtures for ralph testing."""
import subprocess
import sys
import textwrap
from pathlib import Path
import pytest


@pytest.fixture(scope="session")
def test_venv(tmp_path_factory):
    """Create isolated virtualenv for installation testing."""
    venv_dir = tmp_path_factory.mktemp("venv")

    subprocess.run([sys.executable, "-m", "venv", str(venv_dir)], check=True)

    if sys.platform == "win32":
        python_path = venv_dir / "Scripts" / "python.exe"
        pip_path = venv_dir / "Scripts" / "pip.exe"
    else:
        python_path = venv_dir / "bin" / "python"
        pip_path = venv_dir / "bin" / "pip"

    subprocess.run([str(python_path), "-m", "pip", "install", "--upgrade", "pip"],
                   check=True, capture_output=True)

    yield {
        "venv_dir": venv_dir,
        "python": python_path,
        "pip": pip_path,
    }


@pytest.fixture(scope="session")
def built_wheel(tmp_path_factory):
    """Build wheel once for all installation tests."""
    project_root = Path(__file__).parent.parent
    build_dir = tmp_path_factory.mktemp("build")

    subprocess.run(
        [sys.executable, "-m", "build", "--wheel", "--outdir", str(build_dir)],
        cwd=project_root,
        capture_output=True,
        check=True
    )

    wheels = list(build_dir.glob("*.whl"))
    assert len(wheels) == 1, f"Expected 1 wheel, found {len(wheels)}"

    return wheels[0]


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Mock HOME and XDG config directory for agent config lookup."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    return home


@pytest.fixture
def workspace(tmp_path, monkeypatch, isolated_home):
    """Empty working directory the loop runs in."""
    work_dir = tmp_path / "workspace"
    work_dir.mkdir()
    monkeypatch.chdir(work_dir)
    monkeypatch.delenv("RALPH_OPENCODE_BIN", raising=False)
    return work_dir


@pytest.fixture
def mock_git_repo(workspace):
    """Turn the workspace into a git repository with one commit."""
    subprocess.run(["git", "init"], cwd=workspace, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=workspace, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=workspace, check=True, capture_output=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=workspace, check=True, capture_output=True)

    (workspace / "README.md").write_text("# Test repo")
    subprocess.run(["git", "add", "README.md"], cwd=workspace, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial commit"], cwd=workspace, check=True, capture_output=True)

    return workspace


@pytest.fixture
def fake_agent(tmp_path):
    """
    Factory for an executable that stands in for the opencode CLI.

    The body is Python source run with sys already imported; it sees the
    command line as sys.argv, e.g. ['fake-opencode', 'run', '-m', 'model', '<prompt>'].
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(body: str, name: str = "fake-opencode") -> Path:
        script = bin_dir / name
        script.write_text(f"#!{sys.executable}\nimport sys\n{textwrap.dedent(body)}")
        script.chmod(0o755)
        return script

    return _make
