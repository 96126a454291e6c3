"""
LabConfig - the configuration snapshot a job is created from.

A LabConfig carries everything needed to (re)create a lab: provider
credentials, network and node-pool parameters, Coder admin credentials and
the workspace template source. Jobs keep their own copy so a destroyed lab
can be recreated from the same values later.
"""

import copy
from dataclasses import asdict, dataclass, fields, replace
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from easylab.credentials import OVHCredentials


# Snapshot fields that carry provider credentials (OVH)
CREDENTIAL_FIELDS = (
    "ovh_application_key",
    "ovh_application_secret",
    "ovh_consumer_key",
    "ovh_service_name",
    "ovh_endpoint",
)


@dataclass
class LabConfig:
    """
    Configuration values for one lab.

    Attributes mirror the lab creation form. Names of cloud resources
    (gateway, private network, cluster, node pool) are given unprefixed;
    the driver prefixes them with the stack name when projecting them into
    engine configuration.
    """
    stack_name: str = ""
    provider: str = "ovh"

    # Bring your own Kubernetes cluster
    use_existing_cluster: bool = False
    external_kubeconfig: str = ""

    # OVH credentials
    ovh_application_key: str = ""
    ovh_application_secret: str = ""
    ovh_consumer_key: str = ""
    ovh_service_name: str = ""
    ovh_endpoint: str = ""

    # Network
    network_gateway_name: str = ""
    network_gateway_model: str = ""
    network_private_network_name: str = ""
    network_region: str = ""
    network_mask: str = ""
    network_start_ip: str = ""
    network_end_ip: str = ""
    network_id: str = ""

    # Kubernetes
    k8s_cluster_name: str = ""

    # Node pool
    nodepool_name: str = ""
    nodepool_flavor: str = ""
    nodepool_desired_node_count: int = 0
    nodepool_min_node_count: int = 0
    nodepool_max_node_count: int = 0

    # Coder
    coder_admin_email: str = ""
    coder_admin_password: str = ""
    coder_version: str = ""
    coder_db_user: str = ""
    coder_db_password: str = ""
    coder_db_name: str = ""
    coder_template_name: str = ""

    # Template source: uploaded file or git
    template_file_path: str = ""
    template_source: str = ""
    template_git_repo: str = ""
    template_git_folder: str = ""
    template_git_branch: str = ""

    def missing_credentials(self) -> list[str]:
        """Return the names of credential fields that are empty."""
        return [name for name in CREDENTIAL_FIELDS if not getattr(self, name)]

    def with_credentials(self, creds: "OVHCredentials") -> "LabConfig":
        """Return a copy with provider credentials replaced by `creds`."""
        return replace(
            self,
            ovh_application_key=creds.application_key,
            ovh_application_secret=creds.application_secret,
            ovh_consumer_key=creds.consumer_key,
            ovh_service_name=creds.service_name,
            ovh_endpoint=creds.endpoint,
        )

    def copy(self) -> "LabConfig":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "LabConfig":
        """
        Deserialize from dictionary.

        Unknown keys are ignored and missing keys keep their defaults, so
        snapshots written by older or newer versions still load.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"lab config must be an object, got {type(data).__name__}")
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            field_def = known.get(key)
            if field_def is None or value is None:
                continue
            if field_def.type in (int, "int"):
                value = int(value)
            elif field_def.type in (bool, "bool"):
                value = _as_bool(value)
            else:
                value = str(value)
            values[key] = value
        return cls(**values)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
