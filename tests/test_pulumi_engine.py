"""Tests for the Pulumi Automation API adapter (automation objects mocked)."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from pulumi import automation as auto

from easylab.engine.pulumi_engine import PulumiEngine
from easylab.engine.stack import ConfigEntry
from easylab.errors import EngineError, StackMissingError


@pytest.fixture
def pulumi_engine():
    return PulumiEngine()


class TestStackOperations:

    def test_up_returns_envelopes(self, pulumi_engine):
        stack = MagicMock()
        stack.up.return_value = SimpleNamespace(outputs={
            "kubeClusterId": auto.OutputValue("kube-1", False),
            "kubeconfig": auto.OutputValue("apiVersion: v1", True),
        })
        lines = []

        outputs = pulumi_engine.up(stack, on_output=lines.append)

        assert outputs == {
            "kubeClusterId": {"value": "kube-1", "secret": False},
            "kubeconfig": {"value": "apiVersion: v1", "secret": True},
        }
        stack.up.assert_called_once_with(on_output=lines.append)

    def test_up_failure(self, pulumi_engine):
        stack = MagicMock()
        stack.up.side_effect = RuntimeError("quota exceeded")
        with pytest.raises(EngineError, match="pulumi up failed: quota exceeded"):
            pulumi_engine.up(stack, on_output=print)

    def test_preview_failure(self, pulumi_engine):
        stack = MagicMock()
        stack.preview.side_effect = RuntimeError()
        with pytest.raises(EngineError, match="pulumi preview failed: RuntimeError"):
            pulumi_engine.preview(stack, on_output=print)

    def test_destroy_failure(self, pulumi_engine):
        stack = MagicMock()
        stack.destroy.side_effect = RuntimeError("resource in use")
        with pytest.raises(EngineError, match="pulumi destroy failed: resource in use"):
            pulumi_engine.destroy(stack, on_output=print)

    def test_refresh(self, pulumi_engine):
        stack = MagicMock()
        pulumi_engine.refresh(stack, on_output=print)
        stack.refresh.assert_called_once_with(on_output=print)

    def test_set_config(self, pulumi_engine):
        stack = MagicMock()
        pulumi_engine.set_config(stack, {
            "network:region": ConfigEntry("GRA9"),
            "coder:adminPassword": ConfigEntry("pw", secret=True),
        })

        (values,), _ = stack.set_all_config.call_args
        assert values["network:region"].value == "GRA9"
        assert values["network:region"].secret is False
        assert values["coder:adminPassword"].secret is True

    def test_read_outputs(self, pulumi_engine):
        stack = MagicMock()
        stack.outputs.return_value = {"coderServerURL": auto.OutputValue("https://coder", False)}
        assert pulumi_engine.read_outputs(stack) == {
            "coderServerURL": {"value": "https://coder", "secret": False}
        }


class TestWorkspaceOperations:

    def test_list_stacks(self, pulumi_engine):
        ws = MagicMock()
        ws.list_stacks.return_value = [SimpleNamespace(name="dev"), SimpleNamespace(name="prod")]
        assert pulumi_engine.list_stacks(ws) == ["dev", "prod"]

    def test_select_failure(self, pulumi_engine):
        with patch("easylab.engine.pulumi_engine.auto.Stack.select", side_effect=RuntimeError("locked")):
            with pytest.raises(EngineError, match="failed to select stack 'dev': locked") as exc_info:
                pulumi_engine.select_stack(MagicMock(), "dev")
        assert not isinstance(exc_info.value, StackMissingError)

    def test_remove_stack_failure(self, pulumi_engine):
        ws = MagicMock()
        ws.remove_stack.side_effect = RuntimeError("busy")
        with pytest.raises(EngineError, match="failed to remove stack 'dev': busy"):
            pulumi_engine.remove_stack(ws, "dev")

    def test_workspace_env(self, pulumi_engine, tmp_path):
        with patch("easylab.engine.pulumi_engine.auto.LocalWorkspace") as local_workspace:
            pulumi_engine.workspace(tmp_path, {"PULUMI_HOME": "/cache/.pulumi", "GOWORK": "off"})

        _, kwargs = local_workspace.call_args
        assert kwargs["work_dir"] == str(tmp_path)
        assert kwargs["pulumi_home"] == "/cache/.pulumi"
        assert kwargs["env_vars"] == {"PULUMI_HOME": "/cache/.pulumi", "GOWORK": "off"}
        assert kwargs["program"] is None
