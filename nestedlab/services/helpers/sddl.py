"""
SDDL Security Descriptor Editing - WMI namespace DACL patching

WMI namespace security is read and written as an SDDL string
(Win32_SecurityDescriptorHelper.Win32SDToSDDL / SDDLToWin32SD). This module
edits the DACL part of that string: add or widen an ACE for a SID, or remove
the explicit ACEs for a SID. Everything it does not need to understand
(owner, group, SACL, resource attributes) is carried through verbatim.

    O:BAG:BAD:(A;CI;CCDCLCSWRPWPRCWD;;;BA)(A;CI;CCDCRP;;;NS)
    ^owner ^group ^DACL: (type;flags;rights;object;inherit_object;sid)
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

# WMI namespace access rights (__SystemSecurity)
WMI_PERMISSIONS = {
    "Enable": 0x1,
    "MethodExecute": 0x2,
    "FullWrite": 0x4,
    "PartialWrite": 0x8,
    "ProviderWrite": 0x10,
    "RemoteAccess": 0x20,
    "ReadSecurity": 0x20000,
    "WriteSecurity": 0x40000,
}

# SDDL two-letter access right codes
RIGHTS_CODES = {
    "CC": 0x1,
    "DC": 0x2,
    "LC": 0x4,
    "SW": 0x8,
    "RP": 0x10,
    "WP": 0x20,
    "DT": 0x40,
    "LO": 0x80,
    "CR": 0x100,
    "SD": 0x10000,
    "RC": 0x20000,
    "WD": 0x40000,
    "WO": 0x80000,
    "GA": 0x10000000,
    "GX": 0x20000000,
    "GW": 0x40000000,
    "GR": 0x80000000,
    "FA": 0x1F01FF,
    "FR": 0x120089,
    "FW": 0x120116,
    "FX": 0x1200A0,
    "KA": 0xF003F,
    "KR": 0x20019,
    "KW": 0x20006,
    "KX": 0x20019,
}

ALLOW = "A"
DENY = "D"
INHERITED_FLAG = "ID"
CONTAINER_INHERIT_FLAG = "CI"

_SID_RE = re.compile(r"^(S-1-\d+(-\d+)*|[A-Z]{2})$", re.IGNORECASE)
_SECTIONS = "OGDS"


def permissions_to_mask(names: Iterable[str]) -> int:
    """
    Convert WMI permission names to an access mask.

    Names are matched case-insensitively against WMI_PERMISSIONS.

    Raises:
        ValueError: unknown permission name or empty list
    """
    lookup = {k.lower(): v for k, v in WMI_PERMISSIONS.items()}
    mask = 0
    seen = False
    for name in names:
        seen = True
        value = lookup.get(name.strip().lower())
        if value is None:
            valid = ", ".join(WMI_PERMISSIONS)
            raise ValueError(f"Unknown WMI permission '{name}'. Valid: {valid}")
        mask |= value
    if not seen:
        raise ValueError("At least one WMI permission is required")
    return mask


def rights_to_mask(rights: str) -> int:
    """Parse an SDDL rights field (hex or two-letter codes) into an int."""
    rights = rights.strip()
    if not rights:
        return 0
    if rights.lower().startswith("0x"):
        return int(rights, 16)
    if rights.isdigit():
        return int(rights)
    if len(rights) % 2:
        raise ValueError(f"Malformed SDDL rights '{rights}'")
    mask = 0
    for i in range(0, len(rights), 2):
        code = rights[i:i + 2].upper()
        if code not in RIGHTS_CODES:
            raise ValueError(f"Unknown SDDL rights code '{code}'")
        mask |= RIGHTS_CODES[code]
    return mask


def _normalize_sid(sid: str) -> str:
    return sid.strip().upper()


@dataclass
class Ace:
    ace_type: str
    flags: str
    rights: str
    object_guid: str
    inherit_object_guid: str
    sid: str
    extra: Optional[str] = None  # resource attribute / condition, kept verbatim

    @classmethod
    def parse(cls, body: str) -> "Ace":
        parts = body.split(";", 5)
        if len(parts) != 6:
            raise ValueError(f"Malformed ACE '({body})'")
        sid, sep, extra = parts[5].partition(";")
        return cls(
            ace_type=parts[0],
            flags=parts[1],
            rights=parts[2],
            object_guid=parts[3],
            inherit_object_guid=parts[4],
            sid=sid,
            extra=extra if sep else None,
        )

    @property
    def mask(self) -> int:
        return rights_to_mask(self.rights)

    @property
    def inherited(self) -> bool:
        return INHERITED_FLAG in self._flag_list()

    def _flag_list(self) -> List[str]:
        return [self.flags[i:i + 2].upper() for i in range(0, len(self.flags), 2)]

    def add_flag(self, flag: str) -> None:
        if flag not in self._flag_list():
            self.flags += flag

    def matches(self, sid: str, ace_type: Optional[str] = None) -> bool:
        if _normalize_sid(self.sid) != _normalize_sid(sid):
            return False
        return ace_type is None or self.ace_type.upper() == ace_type

    def render(self) -> str:
        fields = [self.ace_type, self.flags, self.rights, self.object_guid,
                  self.inherit_object_guid, self.sid]
        if self.extra is not None:
            fields.append(self.extra)
        return "(" + ";".join(fields) + ")"


@dataclass
class SecurityDescriptor:
    owner: Optional[str] = None
    group: Optional[str] = None
    dacl_flags: str = ""
    dacl: Optional[List[Ace]] = None
    sacl: Optional[str] = None  # kept as raw text

    def render(self) -> str:
        out = []
        if self.owner is not None:
            out.append(f"O:{self.owner}")
        if self.group is not None:
            out.append(f"G:{self.group}")
        if self.dacl is not None:
            out.append("D:" + self.dacl_flags + "".join(a.render() for a in self.dacl))
        if self.sacl is not None:
            out.append(f"S:{self.sacl}")
        return "".join(out)


def _split_sections(sddl: str) -> dict:
    """Split at top-level 'X:' markers, ignoring anything inside parentheses."""
    sections = {}
    current = None
    start = 0
    depth = 0
    i = 0
    while i < len(sddl):
        ch = sddl[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError("Unbalanced parenthesis in SDDL")
        elif depth == 0 and ch in _SECTIONS and i + 1 < len(sddl) and sddl[i + 1] == ":":
            if current is not None:
                sections[current] = sddl[start:i]
            elif sddl[:i].strip():
                raise ValueError(f"Unexpected text before first SDDL section: '{sddl[:i]}'")
            if ch in sections:
                raise ValueError(f"Duplicate SDDL section '{ch}:'")
            current = ch
            start = i + 2
            i += 2
            continue
        i += 1
    if depth != 0:
        raise ValueError("Unbalanced parenthesis in SDDL")
    if current is None:
        if sddl.strip():
            raise ValueError(f"No SDDL sections found in '{sddl}'")
    else:
        sections[current] = sddl[start:]
    return sections


def _parse_acl(text: str):
    flags_end = text.find("(")
    if flags_end == -1:
        return text, []
    flags = text[:flags_end]
    aces = []
    depth = 0
    body_start = 0
    for i in range(flags_end, len(text)):
        ch = text[i]
        if ch == "(":
            if depth == 0:
                body_start = i + 1
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                aces.append(Ace.parse(text[body_start:i]))
        elif depth == 0:
            raise ValueError(f"Unexpected text between ACEs: '{text[i:]}'")
    return flags, aces


def parse_sddl(sddl: str) -> SecurityDescriptor:
    """Parse an SDDL string. Raises ValueError when malformed."""
    sections = _split_sections(sddl.strip())
    descriptor = SecurityDescriptor(
        owner=sections.get("O"),
        group=sections.get("G"),
        sacl=sections.get("S"),
    )
    if "D" in sections:
        descriptor.dacl_flags, descriptor.dacl = _parse_acl(sections["D"])
    return descriptor


def _check_sid(sid: str) -> str:
    if not _SID_RE.match(sid.strip()):
        raise ValueError(f"Not a SID or SDDL alias: '{sid}'")
    return sid.strip()


def grant(sddl: str, sid: str, mask: int, allow: bool = True, inherit: bool = True) -> str:
    """
    Return `sddl` with `mask` granted (or denied) to `sid`.

    An existing explicit ACE of the same type is widened in place. Otherwise
    a new ACE is inserted in canonical position: deny ACEs before the first
    explicit allow ACE, allow ACEs after the last explicit ACE.
    The input string comes back untouched when nothing changes.
    """
    sid = _check_sid(sid)
    if mask <= 0:
        raise ValueError("mask must be a positive access mask")
    ace_type = ALLOW if allow else DENY

    descriptor = parse_sddl(sddl)
    if descriptor.dacl is None:
        descriptor.dacl = []

    for ace in descriptor.dacl:
        if ace.inherited or not ace.matches(sid, ace_type):
            continue
        current = ace.mask
        new_mask = current | mask
        needs_inherit = inherit and CONTAINER_INHERIT_FLAG not in ace._flag_list()
        if new_mask == current and not needs_inherit:
            return sddl
        ace.rights = f"0x{new_mask:x}"
        if inherit:
            ace.add_flag(CONTAINER_INHERIT_FLAG)
        return descriptor.render()

    new_ace = Ace(
        ace_type=ace_type,
        flags=CONTAINER_INHERIT_FLAG if inherit else "",
        rights=f"0x{mask:x}",
        object_guid="",
        inherit_object_guid="",
        sid=sid,
    )
    explicit = [i for i, a in enumerate(descriptor.dacl) if not a.inherited]
    if allow:
        position = explicit[-1] + 1 if explicit else 0
    else:
        allows = [i for i in explicit if descriptor.dacl[i].ace_type.upper() == ALLOW]
        position = allows[0] if allows else (explicit[-1] + 1 if explicit else 0)
    descriptor.dacl.insert(position, new_ace)
    return descriptor.render()


def revoke(sddl: str, sid: str) -> str:
    """Remove explicit (non-inherited) ACEs for `sid`. Unchanged input is returned as-is."""
    sid = _check_sid(sid)
    descriptor = parse_sddl(sddl)
    if not descriptor.dacl:
        return sddl
    kept = [a for a in descriptor.dacl if a.inherited or not a.matches(sid)]
    if len(kept) == len(descriptor.dacl):
        return sddl
    descriptor.dacl = kept
    return descriptor.render()

