"""Shared fixtures: lab and process configuration, registry, fake Pulumi engine."""

import os
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch

import pytest

from easylab.config import EasylabConfig
from easylab.credentials import CredentialStore, OVHCredentials
from easylab.errors import EngineError, StackMissingError
from easylab.job_store import FileJobStore, JobRegistry
from easylab.schemas import LabConfig


KUBECONFIG = """apiVersion: v1
kind: Config
clusters:
- name: dev
"""


@pytest.fixture
def ovh_credentials():
    return OVHCredentials(
        application_key="ak",
        application_secret="as",
        consumer_key="ck",
        service_name="svc",
        endpoint="ovh-eu",
    )


@pytest.fixture
def credential_store(ovh_credentials):
    store = CredentialStore()
    store.set(ovh_credentials)
    return store


@pytest.fixture
def lab_config(ovh_credentials):
    lab = LabConfig(
        stack_name="dev",
        network_gateway_name="gw",
        network_gateway_model="s",
        network_private_network_name="net",
        network_region="GRA9",
        network_mask="255.255.255.0",
        network_start_ip="10.0.0.2",
        network_end_ip="10.0.0.254",
        k8s_cluster_name="cluster",
        nodepool_name="pool",
        nodepool_flavor="b3-8",
        nodepool_desired_node_count=2,
        nodepool_min_node_count=1,
        nodepool_max_node_count=3,
        coder_admin_email="admin@example.com",
        coder_admin_password="secret-pw",
        coder_version="2.16.0",
        coder_db_user="coder",
        coder_db_password="db-pw",
        coder_db_name="coder",
        coder_template_name="docker",
    )
    return lab.with_credentials(ovh_credentials)


@pytest.fixture
def template_dir(tmp_path):
    """A Go program template with a nested package and a .git directory."""
    template = tmp_path / "template"
    (template / "coder").mkdir(parents=True)
    (template / ".git").mkdir()
    (template / "main.go").write_text("package main\n")
    (template / "go.mod").write_text("module lab\n")
    (template / "go.sum").write_text("")
    (template / "coder" / "coder.go").write_text("package coder\n")
    (template / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return template


@pytest.fixture
def easylab_config(tmp_path, template_dir):
    return EasylabConfig(
        work_dir=str(tmp_path / "work"),
        data_dir=str(tmp_path / "data"),
        template_dir=str(template_dir),
        base_dir=str(tmp_path / "base"),
        config_passphrase="test-passphrase",
        dependency_timeout_seconds=5,
    )


@pytest.fixture
def store(easylab_config):
    return FileJobStore(easylab_config.data_path)


@pytest.fixture
def registry(store):
    return JobRegistry(store)


@pytest.fixture(autouse=True)
def mock_subprocess_run():
    """No test ever runs the Go toolchain."""
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
    with patch("easylab.engine.workspace.subprocess.run", return_value=completed) as mock_run:
        yield mock_run


# =============================================================================
# Fake engine
# =============================================================================

@dataclass
class FakeWorkspace:
    work_dir: Path
    env_vars: dict[str, str]
    program: Any = None


@dataclass
class FakeStack:
    name: str
    workspace: FakeWorkspace
    config: dict[str, Any] = field(default_factory=dict)


class FakeEngine:
    """
    In-memory stand-in for PulumiEngine.

    Stacks live in `stacks`; set the *_error attributes to make the matching
    operation fail. `calls` records operation names in order. Set `up_gate`
    to hold `up` until the event is set.
    """

    def __init__(self, stacks: Optional[set[str]] = None):
        self.stacks: set[str] = set(stacks or ())
        self.calls: list[str] = []
        self.workspaces: list[FakeWorkspace] = []
        self.select_error: Optional[EngineError] = None
        self.preview_error: Optional[Exception] = None
        self.up_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.read_outputs_error: Optional[Exception] = None
        self.up_outputs: dict[str, Any] = {
            "kubeClusterId": {"value": "kube-123", "secret": False},
            "kubeconfig": {"value": KUBECONFIG, "secret": True},
            "coderServerURL": "https://coder.example.com",
            "coderSessionToken": {"value": "token-abc", "secret": True},
            "coderOrganizationID": "org-1",
        }
        self.stack_outputs: dict[str, Any] = {}
        self.progress = ["Updating (dev)", "Resources: 3 created"]
        self.last_config: dict[str, Any] = {}
        self.environ_during_up: dict[str, Optional[str]] = {}
        self.up_gate: Optional[threading.Event] = None

    def workspace(self, work_dir, env_vars, program=None):
        self.calls.append("workspace")
        ws = FakeWorkspace(Path(work_dir), dict(env_vars), program)
        self.workspaces.append(ws)
        return ws

    def select_stack(self, workspace, stack_name):
        self.calls.append("select_stack")
        if self.select_error is not None:
            raise self.select_error
        if stack_name not in self.stacks:
            raise StackMissingError(f"stack '{stack_name}' not found")
        return FakeStack(stack_name, workspace)

    def create_stack(self, workspace, stack_name):
        self.calls.append("create_stack")
        self.stacks.add(stack_name)
        return FakeStack(stack_name, workspace)

    def list_stacks(self, workspace):
        self.calls.append("list_stacks")
        return sorted(self.stacks)

    def set_config(self, stack, entries):
        self.calls.append("set_config")
        stack.config = dict(entries)
        self.last_config = dict(entries)

    def _stream(self, on_output):
        for line in self.progress:
            on_output(line + "\n")

    def preview(self, stack, on_output):
        self.calls.append("preview")
        self._stream(on_output)
        if self.preview_error is not None:
            raise self.preview_error

    def up(self, stack, on_output):
        self.calls.append("up")
        if self.up_gate is not None:
            self.up_gate.wait(timeout=30)
        self.environ_during_up = {
            key: os.environ.get(key) for key in ("PULUMI_BACKEND_URL", "OVH_APPLICATION_KEY")
        }
        self._stream(on_output)
        if self.up_error is not None:
            raise self.up_error
        return dict(self.up_outputs)

    def refresh(self, stack, on_output):
        self.calls.append("refresh")
        self._stream(on_output)

    def destroy(self, stack, on_output):
        self.calls.append("destroy")
        self._stream(on_output)
        if self.destroy_error is not None:
            raise self.destroy_error

    def read_outputs(self, stack):
        self.calls.append("read_outputs")
        if self.read_outputs_error is not None:
            raise self.read_outputs_error
        return dict(self.stack_outputs)

    def remove_stack(self, workspace, stack_name):
        self.calls.append("remove_stack")
        if self.remove_error is not None:
            raise self.remove_error
        self.stacks.discard(stack_name)


@pytest.fixture
def engine():
    return FakeEngine()
