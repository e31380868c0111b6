"""
Kickstart rendering for the AlmaLinux guests.

Templates live in nestedlab/templates/kickstart/ks-<version>.cfg and use
string.Template placeholders ($hostname, $ip, ...). Literal dollar signs in
the %post sections are written as $$.
"""

import ipaddress
import logging
import shlex
from pathlib import Path
from string import Template
from typing import List, Optional, Union

from nestedlab.config import LabConfig
from nestedlab.errors import ConfigError

logger = logging.getLogger("nestedlab.kickstart")

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "kickstart"
VERSIONS = ("v1", "v2")


def netmask_from_prefix(prefix: int) -> str:
    """
    >>> netmask_from_prefix(24)
    '255.255.255.0'
    """
    if not 0 <= int(prefix) <= 32:
        raise ValueError(f"prefix length must be 0-32, got {prefix}")
    return str(ipaddress.IPv4Network(f"0.0.0.0/{int(prefix)}").netmask)


def load_template(version: str) -> Template:
    if version not in VERSIONS:
        raise ValueError(f"Unknown kickstart version '{version}' (expected one of {', '.join(VERSIONS)})")
    path = TEMPLATE_DIR / f"ks-{version}.cfg"
    return Template(path.read_text(encoding="utf-8"))


def render_kickstart(
    version: str,
    *,
    hostname: str,
    ip: str,
    netmask: str,
    gateway: str,
    dns: Union[str, List[str]],
    root_password: str,
    ssh_public_key: str,
    admin_user: str = "labuser",
    admin_password: Optional[str] = None,
) -> str:
    """
    Render a kickstart file.

    Args:
        version: "v1" (root only) or "v2" (adds the lab user, disables cloud-init)
        dns: One server or a list; joined with commas for the network line
        admin_password: Lab user password for v2 (defaults to root_password)

    Passwords are shell-quoted; anaconda splits kickstart lines the way a
    POSIX shell does, so an unquoted "#" or space would cut them short.

    Raises:
        ValueError: unknown version
        KeyError: the template references a placeholder that was not supplied
    """
    template = load_template(version)
    values = {
        "hostname": hostname,
        "ip": ip,
        "netmask": netmask,
        "gateway": gateway,
        "dns": dns if isinstance(dns, str) else ",".join(dns),
        "root_password": shlex.quote(root_password),
        "ssh_public_key": ssh_public_key.strip(),
        "admin_user": admin_user,
        "admin_password": shlex.quote(admin_password or root_password),
    }
    return template.substitute(values)


def read_public_key(path: str) -> str:
    key_path = Path(path).expanduser()
    if not key_path.is_file():
        raise ConfigError(f"SSH public key not found: {key_path}")
    key = key_path.read_text(encoding="utf-8").strip()
    if not key.startswith(("ssh-", "ecdsa-")):
        raise ConfigError(f"{key_path} does not look like an OpenSSH public key")
    return key


def render_guest_kickstart(
    config: LabConfig,
    index: int,
    version: Optional[str] = None,
    ssh_public_key: Optional[str] = None,
) -> str:
    """Kickstart for guest `index` using the lab's NAT addressing."""
    guests = config.guests
    key = ssh_public_key or read_public_key(guests.ssh_public_key_path)
    password = config.admin_password.get_secret_value()
    hostname = config.guest_names()[index]
    logger.debug("Rendering kickstart %s for %s", version or guests.kickstart_version, hostname)
    return render_kickstart(
        version or guests.kickstart_version,
        hostname=hostname,
        ip=config.guest_ip(index),
        netmask=netmask_from_prefix(config.nat_prefix_length),
        gateway=config.hyperv.gateway_ip,
        dns=guests.dns,
        root_password=password,
        ssh_public_key=key,
        admin_password=password,
    )
