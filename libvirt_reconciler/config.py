"""
Configuration management for libvirt-reconciler.

This module handles loading and validating configuration from various sources
including YAML files, environment variables, and command-line arguments.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import Quantity, ShareMount


class LibvirtConfig(BaseModel):
    """Libvirt connection configuration."""

    uri: str = Field(default="qemu:///system", description="Libvirt connection URI")
    timeout: int = Field(default=30, ge=1, le=300, description="Connection timeout in seconds")
    readonly: bool = Field(default=False, description="Use read-only connection (implies dry run)")


class ReconcileConfig(BaseModel):
    """Reconciliation engine configuration."""

    max_workers: int = Field(default=4, ge=1, le=32, description="Concurrent resource operations")
    dry_run: bool = Field(default=False, description="Report changes without applying them")
    shutdown_timeout: float = Field(
        default=60.0, ge=0, le=3600,
        description="Seconds to wait for a graceful shutdown before forcing a restart",
    )


class ProfileConfig(BaseModel):
    """A named VM profile: profiles differ only in memory and install media."""

    memory: Quantity
    install_media: Optional[str] = Field(default=None, description="ISO file name inside iso_dir")


def _default_profiles() -> Dict[str, ProfileConfig]:
    return {
        "server": ProfileConfig(
            memory=Quantity(count=4, unit="GiB"),
            install_media="windows-server-2022.iso",
        ),
        "client": ProfileConfig(
            memory=Quantity(count=2, unit="GiB"),
            install_media="windows-11.iso",
        ),
    }


class GeneratorConfig(BaseModel):
    """Defaults used when expanding VM profiles."""

    lab_network: str = Field(default="lab-net", description="Network for the primary NIC")
    secondary_network: str = Field(default="default", description="Network for an internet-facing NIC")
    pool: str = Field(default="homelab", description="Pool holding primary disks")
    iso_dir: str = Field(default="/var/lib/libvirt/iso", description="Directory of install media")
    driver_media: Optional[str] = Field(
        default=None, description="Driver ISO (e.g. virtio-win.iso) attached after the install media"
    )
    nvram_dir: str = Field(default="/var/lib/libvirt/qemu/nvram", description="Directory for NVRAM files")
    virtiofsd_path: Optional[str] = Field(default=None, description="Explicit virtiofsd binary")
    nic_model: str = Field(default="e1000e", description="Default NIC model")
    disk_bus: str = Field(default="sata", description="Default disk bus")
    vcpus: int = Field(default=2, ge=1, le=256)
    shares: List[ShareMount] = Field(default_factory=list, description="Shares mounted into every VM")
    profiles: Dict[str, ProfileConfig] = Field(default_factory=_default_profiles)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default=None, description="Log file path")
    rotation: str = Field(default="10 MB", description="Rotate the log file at this size")
    retention: str = Field(default="30 days", description="Keep rotated files this long")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class Config(BaseModel):
    """Main configuration class."""

    libvirt: LibvirtConfig = Field(default_factory=LibvirtConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml_file(cls, file_path: str) -> "Config":
        """Load configuration from YAML file."""
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @staticmethod
    def _env_overrides() -> dict:
        """Collect configuration values set through environment variables."""
        config_data = {}

        if uri := os.getenv("LIBVIRT_URI"):
            config_data.setdefault("libvirt", {})["uri"] = uri
        if timeout := os.getenv("LIBVIRT_TIMEOUT"):
            config_data.setdefault("libvirt", {})["timeout"] = int(timeout)
        if readonly := os.getenv("LIBVIRT_READONLY"):
            config_data.setdefault("libvirt", {})["readonly"] = readonly.lower() == "true"

        if workers := os.getenv("RECONCILE_MAX_WORKERS"):
            config_data.setdefault("reconcile", {})["max_workers"] = int(workers)
        if dry_run := os.getenv("RECONCILE_DRY_RUN"):
            config_data.setdefault("reconcile", {})["dry_run"] = dry_run.lower() == "true"
        if shutdown_timeout := os.getenv("RECONCILE_SHUTDOWN_TIMEOUT"):
            config_data.setdefault("reconcile", {})["shutdown_timeout"] = float(shutdown_timeout)

        if log_level := os.getenv("RECONCILER_LOG_LEVEL"):
            config_data.setdefault("logging", {})["level"] = log_level
        if log_file := os.getenv("RECONCILER_LOG_FILE"):
            config_data.setdefault("logging", {})["file"] = log_file

        return config_data

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(**cls._env_overrides())

    @classmethod
    def load(cls, config_file: Optional[str] = None) -> "Config":
        """
        Load configuration from multiple sources with precedence:
        1. Environment variables
        2. YAML file (if provided)
        3. Default values
        """
        data = {}
        if config_file:
            path = Path(config_file)
            if path.exists():
                with open(path, 'r', encoding='utf-8') as f:
                    data = yaml.safe_load(f) or {}

        for section, values in cls._env_overrides().items():
            data.setdefault(section, {}).update(values)

        return cls(**data)

    def to_yaml_file(self, file_path: str) -> None:
        """Save configuration to YAML file."""
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, indent=2, sort_keys=False)
