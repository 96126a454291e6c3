"""
Stack output normalization.

Pulumi stack outputs arrive in three shapes:
- PlainString: a bare string value
- Enveloped: a {"value": ..., "secret": ...} envelope (also "Value"/"Secret")
- Opaque: anything else, including JSON-encoded strings

normalize() turns all of them into a plain string, preferring the
envelope's value, then JSON-string unwrapping, then a raw string cast.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from easylab.schemas import LabConfig, PlatformResult

logger = logging.getLogger(__name__)

KUBECONFIG_FILE = "kubeconfig.yaml"

# Output names written by the lab program
CLUSTER_ID_OUTPUT = "kubeClusterId"
KUBECONFIG_OUTPUT = "kubeconfig"
CODER_URL_OUTPUT = "coderServerURL"
CODER_TOKEN_OUTPUT = "coderSessionToken"
CODER_ORG_OUTPUT = "coderOrganizationID"


@dataclass(frozen=True)
class PlainString:
    value: str


@dataclass(frozen=True)
class Enveloped:
    value: Any
    secret: bool = False


@dataclass(frozen=True)
class Opaque:
    raw: Any


OutputValue = Union[PlainString, Enveloped, Opaque]


def _envelope_key(data: Mapping[str, Any]) -> Optional[str]:
    for key in ("value", "Value"):
        if key in data:
            return key
    return None


def classify(raw: Any) -> OutputValue:
    """Tag a raw output value with its shape."""
    if isinstance(raw, (PlainString, Enveloped, Opaque)):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped[:1] in ('"', "{", "["):
            return Opaque(raw)
        return PlainString(raw)
    if isinstance(raw, Mapping):
        key = _envelope_key(raw)
        if key is not None:
            secret = raw.get("secret", raw.get("Secret", False))
            return Enveloped(raw[key], bool(secret))
    return Opaque(raw)


def _unwrap_json(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return raw
        if isinstance(decoded, str):
            return decoded
        return raw
    try:
        return json.dumps(raw, separators=(",", ":"), sort_keys=True)
    except (TypeError, ValueError):
        return str(raw)


def normalize(raw: Any) -> str:
    """Normalize any output shape to a plain string (None -> "")."""
    tagged = classify(raw)
    if isinstance(tagged, PlainString):
        return tagged.value
    if isinstance(tagged, Enveloped):
        return normalize(tagged.value)
    return _unwrap_json(tagged.raw)


@dataclass
class ExtractedResults:
    """Results pulled from a stack's outputs."""
    kubeconfig: Optional[str] = None
    platform: Optional[PlatformResult] = None
    warnings: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def has_cluster(self) -> bool:
        return bool(self.kubeconfig)


def _looks_like_kubeconfig(text: str) -> bool:
    return "apiVersion" in text or "kind:" in text


def extract_results(
    outputs: Optional[Mapping[str, Any]],
    work_dir: Path,
    lab_config: Optional[LabConfig] = None,
) -> ExtractedResults:
    """
    Extract cluster credentials and platform access from stack outputs.

    The kubeconfig is only taken when a cluster id output proves the cluster
    exists. When the kubeconfig output is missing or empty, the program's
    kubeconfig.yaml in the job directory is read instead. Problems are
    returned as warnings and never raise.
    """
    outputs = outputs or {}
    results = ExtractedResults()

    cluster_id = normalize(outputs.get(CLUSTER_ID_OUTPUT))
    if cluster_id:
        kubeconfig = normalize(outputs.get(KUBECONFIG_OUTPUT))
        if not kubeconfig:
            kubeconfig_path = work_dir / KUBECONFIG_FILE
            try:
                kubeconfig = kubeconfig_path.read_text()
                results.notes.append(f"Kubeconfig read from {kubeconfig_path}")
            except OSError as e:
                results.warnings.append(f"kubeconfig output missing and {KUBECONFIG_FILE} unreadable: {e}")
                kubeconfig = ""
        if kubeconfig:
            if not _looks_like_kubeconfig(kubeconfig):
                results.warnings.append(
                    f"kubeconfig may be invalid (length: {len(kubeconfig)} chars)"
                )
            results.kubeconfig = kubeconfig
            results.notes.append(
                f"Kubeconfig extracted successfully (length: {len(kubeconfig)} chars)"
            )
    else:
        logger.debug("No cluster id in stack outputs, skipping kubeconfig")

    coder_url = normalize(outputs.get(CODER_URL_OUTPUT))
    if coder_url:
        lab_config = lab_config or LabConfig()
        results.platform = PlatformResult(
            url=coder_url,
            admin_email=lab_config.coder_admin_email,
            admin_password=lab_config.coder_admin_password,
            session_token=normalize(outputs.get(CODER_TOKEN_OUTPUT)),
            organization_id=normalize(outputs.get(CODER_ORG_OUTPUT)),
        )
        results.notes.append("Coder configuration extracted and stored successfully")

    return results
