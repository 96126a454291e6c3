"""
Pulumi engine adapter.

Thin wrapper over the Pulumi Automation API (pulumi.automation). Every
operation is scoped to a LocalWorkspace rooted at the job directory and
carrying the job's explicit environment map, so concurrent jobs never
share credentials through os.environ.

All automation errors are translated to EngineError; a missing stack on
selection becomes StackMissingError.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pulumi import automation as auto

from easylab.engine.stack import ConfigEntry
from easylab.errors import EngineError, StackMissingError

logger = logging.getLogger(__name__)

OutputFn = Callable[[str], None]


def _engine_error(operation: str, exc: Exception) -> EngineError:
    message = str(exc).strip() or exc.__class__.__name__
    return EngineError(f"{operation}: {message}")


def _plain_outputs(outputs: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Convert automation OutputValues into value/secret envelopes."""
    result: dict[str, Any] = {}
    for name, output in (outputs or {}).items():
        if isinstance(output, auto.OutputValue):
            result[name] = {"value": output.value, "secret": output.secret}
        else:
            result[name] = output
    return result


class PulumiEngine:
    """Drive Pulumi stacks through the Automation API."""

    def workspace(
        self,
        work_dir: Path,
        env_vars: Mapping[str, str],
        program: Optional[Callable[[], None]] = None,
    ) -> auto.LocalWorkspace:
        """Open a LocalWorkspace on `work_dir` (which holds Pulumi.yaml)."""
        logger.debug(f"Opening Pulumi workspace in {work_dir}")
        try:
            return auto.LocalWorkspace(
                work_dir=str(work_dir),
                pulumi_home=env_vars.get("PULUMI_HOME"),
                program=program,
                env_vars=dict(env_vars),
            )
        except Exception as e:
            raise _engine_error("failed to open workspace", e) from e

    def select_stack(self, workspace: auto.LocalWorkspace, stack_name: str) -> auto.Stack:
        try:
            return auto.Stack.select(stack_name, workspace)
        except auto.StackNotFoundError as e:
            raise StackMissingError(f"stack '{stack_name}' not found") from e
        except Exception as e:
            raise _engine_error(f"failed to select stack '{stack_name}'", e) from e

    def create_stack(self, workspace: auto.LocalWorkspace, stack_name: str) -> auto.Stack:
        try:
            return auto.Stack.create(stack_name, workspace)
        except Exception as e:
            raise _engine_error(f"failed to create stack '{stack_name}'", e) from e

    def list_stacks(self, workspace: auto.LocalWorkspace) -> list[str]:
        try:
            return [summary.name for summary in workspace.list_stacks()]
        except Exception as e:
            raise _engine_error("failed to list stacks", e) from e

    def set_config(self, stack: auto.Stack, entries: Mapping[str, ConfigEntry]) -> None:
        values = {
            key: auto.ConfigValue(value=entry.value, secret=entry.secret)
            for key, entry in entries.items()
        }
        try:
            stack.set_all_config(values)
        except Exception as e:
            raise _engine_error("failed to set stack configuration", e) from e

    def preview(self, stack: auto.Stack, on_output: OutputFn) -> None:
        try:
            stack.preview(on_output=on_output)
        except Exception as e:
            raise _engine_error("pulumi preview failed", e) from e

    def up(self, stack: auto.Stack, on_output: OutputFn) -> dict[str, Any]:
        """Apply the stack and return its outputs as value/secret envelopes."""
        try:
            result = stack.up(on_output=on_output)
        except Exception as e:
            raise _engine_error("pulumi up failed", e) from e
        return _plain_outputs(result.outputs)

    def refresh(self, stack: auto.Stack, on_output: OutputFn) -> None:
        try:
            stack.refresh(on_output=on_output)
        except Exception as e:
            raise _engine_error("pulumi refresh failed", e) from e

    def destroy(self, stack: auto.Stack, on_output: OutputFn) -> None:
        try:
            stack.destroy(on_output=on_output)
        except Exception as e:
            raise _engine_error("pulumi destroy failed", e) from e

    def read_outputs(self, stack: auto.Stack) -> dict[str, Any]:
        try:
            return _plain_outputs(stack.outputs())
        except Exception as e:
            raise _engine_error("failed to read stack outputs", e) from e

    def remove_stack(self, workspace: auto.LocalWorkspace, stack_name: str) -> None:
        try:
            workspace.remove_stack(stack_name)
        except Exception as e:
            raise _engine_error(f"failed to remove stack '{stack_name}'", e) from e
