"""
Stack lifecycle helpers.

- project_config: LabConfig -> Pulumi configuration entries
- select_or_create: select the job's stack, creating it only when a stack
  listing confirms it does not exist
- select_existing: select for destroy, None when the stack is confirmed absent

Every branch is reported through a `log` callable so it ends up in the
job transcript.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from easylab.errors import EngineError, StackMissingError
from easylab.schemas import LabConfig


LogFn = Callable[[str], None]


@dataclass(frozen=True)
class ConfigEntry:
    """One Pulumi configuration value."""
    value: str
    secret: bool = False


def _prefixed(stack_name: str, name: str) -> str:
    return f"{stack_name}-{name}"


def project_config(lab: LabConfig) -> dict[str, ConfigEntry]:
    """
    Project a lab configuration into Pulumi configuration entries.

    Gateway, private network, cluster and node pool names are prefixed with
    the stack name so stacks sharing a backend or project never collide.
    Passwords and external kubeconfigs are secret.
    """
    stack = lab.stack_name
    entries = {
        "ovh:endpoint": ConfigEntry(lab.ovh_endpoint),
        "network:gatewayName": ConfigEntry(_prefixed(stack, lab.network_gateway_name)),
        "network:gatewayModel": ConfigEntry(lab.network_gateway_model),
        "network:privateNetworkName": ConfigEntry(_prefixed(stack, lab.network_private_network_name)),
        "network:region": ConfigEntry(lab.network_region),
        "network:networkMask": ConfigEntry(lab.network_mask),
        "network:networkStartIp": ConfigEntry(lab.network_start_ip),
        "network:networkEndIp": ConfigEntry(lab.network_end_ip),
        "nodepool:name": ConfigEntry(_prefixed(stack, lab.nodepool_name)),
        "nodepool:flavor": ConfigEntry(lab.nodepool_flavor),
        "nodepool:desiredNodeCount": ConfigEntry(str(lab.nodepool_desired_node_count)),
        "nodepool:minNodeCount": ConfigEntry(str(lab.nodepool_min_node_count)),
        "nodepool:maxNodeCount": ConfigEntry(str(lab.nodepool_max_node_count)),
        "k8s:clusterName": ConfigEntry(_prefixed(stack, lab.k8s_cluster_name)),
        "k8s:useExistingCluster": ConfigEntry("true" if lab.use_existing_cluster else "false"),
        "coder:adminEmail": ConfigEntry(lab.coder_admin_email),
        "coder:adminPassword": ConfigEntry(lab.coder_admin_password, secret=True),
        "coder:version": ConfigEntry(lab.coder_version),
        "coder:dbUser": ConfigEntry(lab.coder_db_user),
        "coder:dbPassword": ConfigEntry(lab.coder_db_password, secret=True),
        "coder:dbName": ConfigEntry(lab.coder_db_name),
        "coder:templateName": ConfigEntry(lab.coder_template_name),
    }

    if lab.network_id:
        entries["network:networkId"] = ConfigEntry(lab.network_id)
    if lab.use_existing_cluster and lab.external_kubeconfig:
        entries["k8s:externalKubeconfig"] = ConfigEntry(lab.external_kubeconfig, secret=True)

    optional = {
        "coder:templateFilePath": lab.template_file_path,
        "coder:templateSource": lab.template_source,
        "coder:templateGitRepo": lab.template_git_repo,
        "coder:templateGitFolder": lab.template_git_folder,
        "coder:templateGitBranch": lab.template_git_branch,
    }
    for key, value in optional.items():
        if value:
            entries[key] = ConfigEntry(value)

    return entries


def select_or_create(engine: Any, workspace: Any, stack_name: str, log: LogFn) -> Any:
    """
    Select the stack, creating it only when it is confirmed absent.

    Raises:
        EngineError: If selection failed although the stack is listed, or
            listing/creation failed
    """
    log(f"Selecting Pulumi stack '{stack_name}'...")
    try:
        stack = engine.select_stack(workspace, stack_name)
    except EngineError as e:
        log(f"Stack selection failed: {e}. Verifying whether stack exists...")
        names = engine.list_stacks(workspace)
        if stack_name in names:
            log(f"Stack '{stack_name}' exists but could not be selected")
            raise EngineError(
                f"stack '{stack_name}' exists but could not be selected: {e}"
            ) from e
        log(f"Stack '{stack_name}' does not exist, creating it...")
        stack = engine.create_stack(workspace, stack_name)
        log(f"Stack '{stack_name}' created")
        return stack

    log(f"Stack '{stack_name}' selected")
    return stack


def select_existing(engine: Any, workspace: Any, stack_name: str, log: LogFn) -> Optional[Any]:
    """
    Select a stack that is expected to exist.

    Returns None when the stack is confirmed absent by a listing.

    Raises:
        EngineError: If selection failed although the stack is listed
    """
    log(f"Selecting Pulumi stack '{stack_name}'...")
    try:
        stack = engine.select_stack(workspace, stack_name)
    except EngineError as e:
        if not isinstance(e, StackMissingError):
            log(f"Stack selection failed: {e}. Verifying whether stack exists...")
        names = engine.list_stacks(workspace)
        if stack_name in names:
            log(f"Stack '{stack_name}' exists but could not be selected")
            raise EngineError(
                f"stack '{stack_name}' exists but could not be selected: {e}"
            ) from e
        log(f"Stack '{stack_name}' not found")
        return None

    log(f"Stack '{stack_name}' selected")
    return stack
