"""
Libvirt Reconciler - 声明式虚拟化基础设施编译与调和工具

将网络、存储池、卷和虚拟机的声明式描述编译为 libvirt XML，
并将期望状态幂等地应用到 libvirt 守护进程。

libvirt-python 是可选依赖（``libvirt`` extra），因此这里不导出 ``LibvirtClient``；
需要时请从 ``libvirt_reconciler.libvirt_client`` 导入。
"""

__version__ = "1.0.0"
__description__ = "Declarative compiler and reconciler for libvirt networks, pools and domains"

# 导出主要类和函数
from .config import Config
from .exceptions import (
    ConfigurationError,
    HypervisorConnectionError,
    HypervisorOperationError,
    HypervisorPermissionError,
    ReconcilerError,
    ResourceNotFoundError,
    TopologyValidationError,
    UnsupportedChangeError,
)
from .generator import ProfileGenerator, ProfileParams, expand, with_interface, with_share
from .hypervisor import HypervisorClient
from .models import (
    DesiredState,
    DomainSpec,
    NetworkSpec,
    Outcome,
    ReconcileReport,
    StoragePoolSpec,
    VolumeEntry,
    VolumeSpec,
)
from .reconciler import Reconciler
from .topology import load_desired_state
from .validation import ensure_valid, validate
from .xml_templates import render_domain, render_network, render_pool, render_volume

__all__ = [
    "__version__",
    "__description__",
    "Config",
    "ConfigurationError",
    "HypervisorConnectionError",
    "HypervisorOperationError",
    "HypervisorPermissionError",
    "ReconcilerError",
    "ResourceNotFoundError",
    "TopologyValidationError",
    "UnsupportedChangeError",
    "ProfileGenerator",
    "ProfileParams",
    "expand",
    "with_interface",
    "with_share",
    "HypervisorClient",
    "DesiredState",
    "DomainSpec",
    "NetworkSpec",
    "Outcome",
    "ReconcileReport",
    "StoragePoolSpec",
    "VolumeEntry",
    "VolumeSpec",
    "Reconciler",
    "load_desired_state",
    "ensure_valid",
    "validate",
    "render_domain",
    "render_network",
    "render_pool",
    "render_volume",
]
