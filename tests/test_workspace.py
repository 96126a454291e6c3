"""Tests for per-job working directories and dependency commands."""

import subprocess

import pytest
import yaml

from easylab.engine.workspace import (
    RUNTIME_PROFILES,
    JobWorkspace,
    get_runtime_profile,
    run_dependency_command,
)
from easylab.errors import PreparationError


@pytest.fixture
def workspace(tmp_path):
    ws = JobWorkspace(tmp_path / "work", "job-1")
    ws.ensure()
    return ws


class TestRuntimeProfiles:

    def test_go_profile(self):
        profile = get_runtime_profile("go")
        assert profile.required_files == ("main.go", "go.mod")
        assert profile.resolve_command == ("go", "mod", "download")
        assert profile.verify_command == ("go", "mod", "verify")

    def test_unknown_runtime(self):
        with pytest.raises(PreparationError, match="unsupported program runtime"):
            get_runtime_profile("cobol")


class TestJobWorkspace:
    """Tests for the job directory."""

    def test_path(self, tmp_path):
        ws = JobWorkspace(tmp_path, "job-1")
        assert ws.path == tmp_path / "job-1"
        assert ws.descriptor_path.name == "Pulumi.yaml"
        assert ws.stack_settings_path("dev").name == "Pulumi.dev.yaml"
        assert not ws.exists()

    def test_write_descriptor(self, workspace):
        """Pulumi.yaml carries name, runtime and description."""
        workspace.write_descriptor("lab-as-code", "go")
        descriptor = yaml.safe_load(workspace.descriptor_path.read_text())

        assert descriptor["name"] == "lab-as-code"
        assert descriptor["runtime"] == "go"
        assert descriptor["description"]
        assert workspace.has_descriptor()

    def test_copy_sources(self, workspace, template_dir):
        """Program sources are copied, .git is not."""
        copied = workspace.copy_sources(template_dir)

        assert copied == ["coder", "go.mod", "go.sum", "main.go"]
        assert (workspace.path / "coder" / "coder.go").is_file()
        assert not (workspace.path / ".git").exists()

    def test_copy_sources_twice(self, workspace, template_dir):
        """Copying over an existing copy succeeds."""
        workspace.copy_sources(template_dir)
        workspace.copy_sources(template_dir)
        assert (workspace.path / "main.go").is_file()

    def test_copy_sources_missing_template(self, workspace, tmp_path):
        with pytest.raises(PreparationError, match="template directory not found"):
            workspace.copy_sources(tmp_path / "missing")

    def test_has_required_files(self, workspace, template_dir):
        profile = RUNTIME_PROFILES["go"]
        assert not workspace.has_required_files(profile)

        workspace.copy_sources(template_dir)
        assert not workspace.has_required_files(profile)

        workspace.write_descriptor("lab-as-code", "go")
        assert workspace.has_required_files(profile)

    def test_prune_keeps_state(self, workspace, template_dir):
        """Prune removes sources and keeps descriptor, stack settings and state."""
        workspace.copy_sources(template_dir)
        workspace.write_descriptor("lab-as-code", "go")
        workspace.stack_settings_path("dev").write_text("config: {}\n")
        workspace.state_dir.mkdir()
        (workspace.state_dir / "stacks").mkdir()
        (workspace.path / "Pulumi.other.yaml").write_text("")

        assert workspace.prune("dev") == []
        remaining = sorted(entry.name for entry in workspace.path.iterdir())
        assert remaining == [".pulumi", "Pulumi.dev.yaml", "Pulumi.yaml"]
        assert (workspace.state_dir / "stacks").is_dir()

    def test_prune_missing_directory(self, tmp_path):
        assert JobWorkspace(tmp_path, "job-none").prune("dev") == []

    def test_remove(self, workspace, template_dir):
        workspace.copy_sources(template_dir)
        workspace.remove()
        assert not workspace.exists()
        workspace.remove()


class TestDependencyResolution:
    """Tests for dependency commands (subprocess.run is patched)."""

    def test_success(self, workspace, mock_subprocess_run):
        profile = RUNTIME_PROFILES["go"]
        assert workspace.resolve_dependencies(profile, {"GOWORK": "off"}, timeout=5) is None

        args, kwargs = mock_subprocess_run.call_args
        assert args[0] == ["go", "mod", "download"]
        assert kwargs["cwd"] == workspace.path
        assert kwargs["timeout"] == 5
        assert kwargs["env"]["GOWORK"] == "off"

    def test_prewarmed_uses_verify(self, workspace, mock_subprocess_run):
        workspace.resolve_dependencies(RUNTIME_PROFILES["go"], {}, timeout=5, prewarmed=True)
        assert mock_subprocess_run.call_args[0][0] == ["go", "mod", "verify"]

    def test_no_command(self, workspace, mock_subprocess_run):
        assert workspace.resolve_dependencies(RUNTIME_PROFILES["yaml"], {}, timeout=5) is None
        mock_subprocess_run.assert_not_called()

    def test_timeout_is_warning(self, workspace, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.TimeoutExpired(cmd="go", timeout=5)
        warning = run_dependency_command(("go", "mod", "download"), workspace.path, {}, 5)
        assert warning == "go mod download did not finish within 5s, continuing"

    def test_nonzero_exit(self, workspace, mock_subprocess_run):
        mock_subprocess_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=1, stdout="", stderr="missing go.sum entry\n"
        )
        with pytest.raises(PreparationError) as exc_info:
            run_dependency_command(("go", "mod", "download"), workspace.path, {}, 5)
        assert str(exc_info.value) == "go mod download failed with exit code 1: missing go.sum entry"

    def test_stderr_truncated(self, workspace, mock_subprocess_run):
        mock_subprocess_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=2, stdout="", stderr="x" * 2000
        )
        with pytest.raises(PreparationError) as exc_info:
            run_dependency_command(("go", "mod", "download"), workspace.path, {}, 5)
        assert str(exc_info.value).endswith("x" * 500)
        assert "x" * 501 not in str(exc_info.value)

    def test_tool_missing(self, workspace, mock_subprocess_run):
        mock_subprocess_run.side_effect = FileNotFoundError("go")
        with pytest.raises(PreparationError, match="could not be started"):
            run_dependency_command(("go", "mod", "download"), workspace.path, {}, 5)
