"""
Lab Configuration - config.yaml + secrets

The whole lab is described by one YAML file. Secrets never live in it:
the admin password comes from NESTEDLAB_ADMIN_PASSWORD, which may be set in
the environment, in a `.env.secret` file next to config.yaml, or through a
mounted secret file named by NESTEDLAB_ADMIN_PASSWORD_FILE.

Usage:
    config = load_config("config.yaml")
    config.node_names()      # ["nestedlab-node1", "nestedlab-node2"]
    config.guest_ip(0)       # "192.168.100.10"
"""

import ipaddress
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from nestedlab.errors import ConfigError
from nestedlab.services.helpers.sddl import permissions_to_mask

logger = logging.getLogger("nestedlab.config")

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_ENV_FILE = ".env.secret"
PASSWORD_ENV = "NESTEDLAB_ADMIN_PASSWORD"

# NetBIOS names are limited to 15 characters
_NETBIOS_MAX = 15
_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*$")


def _get_secret_or_env(env_name: str, default: str = "") -> str:
    """Read from secret file if _FILE env var exists, otherwise use env var."""
    file_path = os.getenv(f"{env_name}_FILE")
    if file_path and os.path.exists(file_path):
        with open(file_path, "r") as f:
            return f.read().strip()
    return os.getenv(env_name, default)


def _network(value: str, field_name: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"{field_name}: invalid CIDR '{value}' ({e})") from e


def _address(value: str, field_name: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(value)
    except ValueError as e:
        raise ValueError(f"{field_name}: invalid IPv4 address '{value}'") from e


# =============================================================================
# Settings blocks
# =============================================================================


class AzureImage(BaseModel):
    publisher: str = "MicrosoftWindowsServer"
    offer: str = "WindowsServer"
    sku: str = "2022-datacenter-azure-edition"
    version: str = "latest"


class AzureSettings(BaseModel):
    """Azure side of the lab: everything Terraform declares."""

    subscription_id: Optional[str] = None
    resource_group: str = "rg-nestedlab"
    location: str = "eastus"
    prefix: str = "nestedlab"
    # Must be a size family that exposes nested virtualization (Dv3/Ev3 and later)
    vm_size: str = "Standard_D8s_v5"
    node_count: int = 2
    admin_username: str = "labadmin"
    vnet_cidr: str = "10.10.0.0/16"
    subnet_cidr: str = "10.10.1.0/24"
    node_ip_start: str = "10.10.1.10"
    allowed_source_cidr: str = "0.0.0.0/0"
    data_disk_count: int = Field(default=4, ge=2, le=16)
    data_disk_size_gb: int = Field(default=256, ge=32)
    image: AzureImage = Field(default_factory=AzureImage)

    @field_validator("prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError("prefix must be lowercase letters, digits and dashes")
        if len(value) + len("-node1") > _NETBIOS_MAX:
            raise ValueError(f"prefix '{value}' makes node names longer than {_NETBIOS_MAX} characters")
        return value

    @field_validator("node_count")
    @classmethod
    def _check_node_count(cls, value: int) -> int:
        if value != 2:
            raise ValueError("the lab is a two-node cluster; node_count must be 2")
        return value


class RemotingSettings(BaseModel):
    """WS-Man / PowerShell remoting parameters used by the controller."""

    auth: Literal["ntlm", "negotiate", "credssp", "basic", "kerberos"] = "ntlm"
    port: int = 5985
    ssl: Optional[bool] = None
    cert_validation: bool = False
    connection_timeout: int = 30
    operation_timeout: int = 300
    read_timeout: int = 330
    reachability_attempts: int = Field(default=30, ge=1)
    reachability_delay: float = Field(default=20.0, ge=0)

    @property
    def use_ssl(self) -> bool:
        if self.ssl is not None:
            return self.ssl
        return self.port == 5986

    @model_validator(mode="after")
    def _check_timeouts(self) -> "RemotingSettings":
        # WSMan requires the read timeout to exceed the operation timeout
        if self.read_timeout <= self.operation_timeout:
            raise ValueError("remoting.read_timeout must be greater than operation_timeout")
        return self


class HyperVSettings(BaseModel):
    """Nested Hyper-V host setup on each node."""

    switch_name: str = "LabNATSwitch"
    nat_name: str = "LabNAT"
    nat_prefix: str = "192.168.100.0/24"
    gateway_ip: str = "192.168.100.1"
    vm_root: str = r"C:\Lab\VMs"
    iso_url: str = "https://repo.almalinux.org/almalinux/9/isos/x86_64/AlmaLinux-9-latest-x86_64-minimal.iso"
    iso_path: str = r"C:\Lab\ISO\AlmaLinux-9-latest-x86_64-minimal.iso"
    iso_sha256: Optional[str] = None
    download_attempts: int = Field(default=5, ge=1)
    download_delay: float = Field(default=30.0, ge=0)

    @field_validator("iso_sha256")
    @classmethod
    def _check_sha(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if not re.fullmatch(r"[0-9a-f]{64}", value):
            raise ValueError("iso_sha256 must be a 64-character hex digest")
        return value


class GuestSettings(BaseModel):
    """AlmaLinux guests installed inside the nested hosts."""

    count: int = Field(default=2, ge=0, le=50)
    name_prefix: str = "alma"
    memory_mb: int = Field(default=4096, ge=1024)
    cpu_count: int = Field(default=2, ge=1)
    disk_gb: int = Field(default=40, ge=10)
    kickstart_version: Literal["v1", "v2"] = "v2"
    ip_start: str = "192.168.100.10"
    dns: List[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])
    ssh_user: str = "root"
    ssh_public_key_path: str = "~/.ssh/id_ed25519.pub"
    ssh_private_key_path: str = "~/.ssh/id_ed25519"
    ssh_port_base: int = Field(default=2200, ge=1024, le=65000)
    run_postinstall: bool = True


class VolumeSpec(BaseModel):
    friendly_name: str
    size_gb: int = Field(ge=1)
    filesystem: Literal["CSVFS_ReFS", "CSVFS_NTFS", "ReFS", "NTFS"] = "CSVFS_ReFS"
    resiliency: Literal["Mirror", "Parity", "Simple"] = "Mirror"


class ClusterSettings(BaseModel):
    name: str = "s2dlab-clu"
    static_address: str = "10.10.1.50"
    validate_cluster: bool = Field(default=True, alias="validate")
    ignore_validation_warnings: bool = True
    witness: Literal["none", "cloud", "fileshare"] = "cloud"
    witness_share: Optional[str] = None
    enable_s2d: bool = True
    pool_name: Optional[str] = None
    volumes: List[VolumeSpec] = Field(
        default_factory=lambda: [VolumeSpec(friendly_name="Volume01", size_gb=100)]
    )

    model_config = {"populate_by_name": True}

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if len(value) > _NETBIOS_MAX:
            raise ValueError(f"cluster name '{value}' exceeds {_NETBIOS_MAX} characters")
        return value

    @property
    def effective_pool_name(self) -> str:
        return self.pool_name or f"S2D on {self.name}"

    @model_validator(mode="after")
    def _check_cluster(self) -> "ClusterSettings":
        names = [v.friendly_name.lower() for v in self.volumes]
        if len(names) != len(set(names)):
            raise ValueError("cluster volume friendly_name values must be unique")
        if self.witness == "fileshare" and not self.witness_share:
            raise ValueError("cluster.witness_share is required when witness is 'fileshare'")
        return self


class WmiGrantSpec(BaseModel):
    namespace: str = "root/cimv2"
    account: str
    permissions: List[str] = Field(default_factory=lambda: ["Enable", "RemoteAccess"])
    allow: bool = True
    inherit: bool = True

    @field_validator("permissions")
    @classmethod
    def _check_permissions(cls, value: List[str]) -> List[str]:
        permissions_to_mask(value)
        return value


class FirewallSettings(BaseModel):
    extra_rules: List[Dict[str, Any]] = Field(default_factory=list)


class TerraformSettings(BaseModel):
    working_dir: str = "terraform"
    binary: str = "terraform"
    vars_file: str = "terraform.tfvars.json"
    auto_approve: bool = False
    init_upgrade: bool = False
    timeout: int = Field(default=3600, ge=60)


# =============================================================================
# Root model
# =============================================================================


class LabConfig(BaseModel):
    azure: AzureSettings = Field(default_factory=AzureSettings)
    remoting: RemotingSettings = Field(default_factory=RemotingSettings)
    hyperv: HyperVSettings = Field(default_factory=HyperVSettings)
    guests: GuestSettings = Field(default_factory=GuestSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    firewall: FirewallSettings = Field(default_factory=FirewallSettings)
    terraform: TerraformSettings = Field(default_factory=TerraformSettings)
    wmi_grants: List[WmiGrantSpec] = Field(default_factory=list)
    admin_password: SecretStr
    config_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @model_validator(mode="after")
    def _check_networks(self) -> "LabConfig":
        vnet = _network(self.azure.vnet_cidr, "azure.vnet_cidr")
        subnet = _network(self.azure.subnet_cidr, "azure.subnet_cidr")
        _network(self.azure.allowed_source_cidr, "azure.allowed_source_cidr")
        if not subnet.subnet_of(vnet):
            raise ValueError(f"azure.subnet_cidr {subnet} is not inside vnet_cidr {vnet}")

        node_start = _address(self.azure.node_ip_start, "azure.node_ip_start")
        for i in range(self.azure.node_count):
            if node_start + i not in subnet:
                raise ValueError(f"node address {node_start + i} is outside subnet {subnet}")

        cluster_ip = _address(self.cluster.static_address, "cluster.static_address")
        if cluster_ip not in subnet:
            raise ValueError(f"cluster.static_address {cluster_ip} is outside subnet {subnet}")
        node_ips = {node_start + i for i in range(self.azure.node_count)}
        if cluster_ip in node_ips:
            raise ValueError("cluster.static_address collides with a node address")

        nat = _network(self.hyperv.nat_prefix, "hyperv.nat_prefix")
        gateway = _address(self.hyperv.gateway_ip, "hyperv.gateway_ip")
        if gateway not in nat or gateway in (nat.network_address, nat.broadcast_address):
            raise ValueError(f"hyperv.gateway_ip {gateway} is not a host address in {nat}")

        guest_start = _address(self.guests.ip_start, "guests.ip_start")
        for i in range(self.guests.count):
            ip = guest_start + i
            if ip not in nat or ip == nat.broadcast_address:
                raise ValueError(f"guest address {ip} is outside nat_prefix {nat}")
            if ip == nat.network_address:
                raise ValueError(f"guest address {ip} is the network address of nat_prefix {nat}")
            if ip == gateway:
                raise ValueError(f"guest address {ip} collides with the NAT gateway")

        for dns in self.guests.dns:
            _address(dns, "guests.dns")

        if len(self.admin_password.get_secret_value()) < 12:
            raise ValueError("admin password must be at least 12 characters (Azure requirement)")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def node_names(self) -> List[str]:
        return [f"{self.azure.prefix}-node{i + 1}" for i in range(self.azure.node_count)]

    def node_private_ip(self, index: int) -> str:
        return str(ipaddress.IPv4Address(self.azure.node_ip_start) + index)

    def guest_names(self) -> List[str]:
        return [f"{self.guests.name_prefix}{i + 1:02d}" for i in range(self.guests.count)]

    def guest_ip(self, index: int) -> str:
        if not 0 <= index < self.guests.count:
            raise IndexError(f"guest index {index} out of range (count={self.guests.count})")
        return str(ipaddress.IPv4Address(self.guests.ip_start) + index)

    def guest_node_index(self, index: int) -> int:
        """Guests are spread round-robin across the nodes."""
        return index % self.azure.node_count

    def guest_ssh_port(self, index: int) -> int:
        return self.guests.ssh_port_base + index

    @property
    def nat_prefix_length(self) -> int:
        return ipaddress.IPv4Network(self.hyperv.nat_prefix).prefixlen

    @property
    def terraform_dir(self) -> Path:
        path = Path(self.terraform.working_dir).expanduser()
        return path if path.is_absolute() else self.config_dir / path


# =============================================================================
# Loading
# =============================================================================


# Top-level keys that hold a settings mapping
CONFIG_SECTIONS = ("azure", "remoting", "hyperv", "guests", "cluster", "firewall", "terraform")


def load_config(
    path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
) -> LabConfig:
    """
    Load and validate config.yaml plus secrets.

    Args:
        path: YAML file (defaults to NESTEDLAB_CONFIG or ./config.yaml)
        env_file: dotenv file with secrets (defaults to .env.secret beside the config)

    Returns:
        Validated LabConfig

    Raises:
        ConfigError: missing file, malformed YAML, missing password or invalid values
    """
    config_path = Path(path or os.getenv("NESTEDLAB_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    secrets_path = Path(env_file) if env_file else config_path.parent / DEFAULT_ENV_FILE
    if secrets_path.is_file():
        load_dotenv(secrets_path, override=False)
        logger.debug("Loaded secrets from %s", secrets_path)
    elif env_file:
        raise ConfigError(f"Secrets file not found: {secrets_path}")

    if "admin_password" in data:
        logger.warning("admin_password in %s is ignored; set %s instead", config_path, PASSWORD_ENV)
        data.pop("admin_password")

    password = _get_secret_or_env(PASSWORD_ENV)
    if not password:
        raise ConfigError(
            f"Admin password not set. Export {PASSWORD_ENV}, add it to {secrets_path}, "
            f"or point {PASSWORD_ENV}_FILE at a secret file."
        )

    for section in CONFIG_SECTIONS:
        value = data.get(section)
        if value is None:
            # An empty "section:" line means defaults
            data.pop(section, None)
        elif not isinstance(value, dict):
            raise ConfigError(f"'{section}' in {config_path} must be a mapping, not {type(value).__name__}")

    azure = data.setdefault("azure", {})
    if not azure.get("subscription_id") and os.getenv("ARM_SUBSCRIPTION_ID"):
        azure["subscription_id"] = os.getenv("ARM_SUBSCRIPTION_ID")

    try:
        config = LabConfig.model_validate(
            {**data, "admin_password": password, "config_dir": config_path.resolve().parent}
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e

    logger.info(
        "Loaded lab config %s (prefix=%s, location=%s, guests=%d)",
        config_path, config.azure.prefix, config.azure.location, config.guests.count,
    )
    return config
