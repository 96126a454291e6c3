"""
easylab - Lab-as-code job engine

Provisions and tears down OVHcloud Kubernetes + Coder labs with Pulumi,
tracking every preview, deployment and destroy as an asynchronous job.
"""

__version__ = "0.1.0"


__all__ = ["EasylabConfig", "load_config", "get_easylab_home"]

from .config import EasylabConfig, load_config, get_easylab_home
