"""
Parsing and rewriting of Proxmox VM configuration files.

A ``.conf`` file holds the live configuration followed by one ``[name]``
section per snapshot. Backups store it as ``{"config": {...}, "snapshots":
{name: {...}}}``. Restores rewrite that document so the disks point at the
cloned storage (and, for a new VM, at the new numeric id) before uploading
it to ``/etc/pve/qemu-server/<vmid>.conf``.

Everything here is pure: no I/O, no remote calls.
"""
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bareprox.core.exceptions import ValidationFailure

DISK_KEY_RE = re.compile(r"^(scsi|virtio|ide|sata|efidisk|tpmstate)\d+$", re.IGNORECASE)
# New-id restores detect the source storage without looking at IDE slots,
# which usually carry ISO media from another storage.
DISK_KEY_NO_IDE_RE = re.compile(r"^(scsi|virtio|sata|efidisk|tpmstate)\d+$", re.IGNORECASE)
NET_KEY_RE = re.compile(r"^net(\d+)$", re.IGNORECASE)
LINK_DOWN_RE = re.compile(r"\blink_down=\d")
SECTION_RE = re.compile(r"^\[(.+)\]$")


@dataclass
class RewrittenConfig:
    """Result of a configuration rewrite."""
    vmid: str
    text: str
    payload: Dict[str, str]
    old_vmid: str
    old_storage: str
    snapshots: Dict[str, Dict[str, str]] = field(default_factory=dict)


def parse_vm_config(raw: str) -> Dict[str, Any]:
    """
    Parse ``.conf`` text into the stored document form.

    Blank lines and comments are skipped; ``[name]`` starts a snapshot
    section; other lines are ``key: value`` pairs split on the first colon.

    Returns:
        ``{"config": {...}}`` plus ``"snapshots"`` when any section exists
    """
    config: Dict[str, str] = {}
    snapshots: Dict[str, Dict[str, str]] = {}
    current = config

    for line in raw.split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue

        section = SECTION_RE.match(trimmed)
        if section:
            current = {}
            snapshots[section.group(1)] = current
            continue

        key, sep, value = trimmed.partition(":")
        if not sep:
            continue
        current[key.strip()] = value.strip()

    document: Dict[str, Any] = {"config": config}
    if snapshots:
        document["snapshots"] = snapshots
    return document


def flatten_config(config: Mapping[str, Any]) -> Dict[str, str]:
    """Keep string and numeric values as strings; drop booleans, nulls and nested values."""
    payload: Dict[str, str] = {}
    for key, value in config.items():
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, str):
            payload[key] = value
        elif isinstance(value, (int, float)):
            payload[key] = str(value)
    return payload


def detect_storage_name(payload: Mapping[str, str], include_ide: bool = True) -> str:
    """
    Storage name of the first disk entry that carries one.

    CD-ROM media is ignored unless it is a cloud-init drive.

    Raises:
        ValidationFailure: If no disk entry names a storage
    """
    pattern = DISK_KEY_RE if include_ide else DISK_KEY_NO_IDE_RE
    for key, value in payload.items():
        if pattern.match(key) and value and ":" in value and not _is_plain_cdrom(value):
            return value.split(":", 1)[0].strip()
    raise ValidationFailure("Failed to determine the original storage name from config.")


def _vmid_from_volume(value: str) -> Optional[str]:
    if not value or not value.strip():
        return None
    rhs = value.strip().split(":", 1)[-1]
    core = rhs.split(",", 1)[0].strip()

    match = re.search(r"(?:^|/)(\d+)/vm-(\d+)-", core)
    if match:
        return match.group(2)
    match = re.search(r"vm-(\d+)-", core)
    if match:
        return match.group(1)
    return None


def extract_old_vmid(payload: Mapping[str, str]) -> str:
    """
    Numeric VM id the disks were created under.

    Looks at disk entries first, then ``vmstate``.

    Raises:
        ValidationFailure: If no entry reveals an id
    """
    if not payload:
        raise ValidationFailure("Empty VM configuration.")

    for key, value in payload.items():
        if DISK_KEY_RE.match(key):
            vmid = _vmid_from_volume(value)
            if vmid:
                return vmid

    vmid = _vmid_from_volume(payload.get("vmstate", ""))
    if vmid:
        return vmid

    raise ValidationFailure("Could not determine old VMID from disk configuration.")


def _is_plain_cdrom(text: str) -> bool:
    lowered = text.lower()
    return "media=cdrom" in lowered and "cloudinit" not in lowered


def update_disk_paths(payload: Dict[str, str], old_vmid: str, new_vmid: str, clone_storage: str) -> None:
    """
    Point every disk at ``clone_storage`` and renumber its path from ``old_vmid``.

    Plain CD-ROM entries are left alone unless they are cloud-init media.
    """
    vm_token = re.compile(re.escape(f"vm-{old_vmid}-"), re.IGNORECASE)
    for key in [k for k in payload if DISK_KEY_RE.match(k)]:
        raw = payload[key]
        if not raw or not raw.strip() or ":" not in raw:
            continue

        rhs = raw.split(":", 1)[1]
        path, sep, options = rhs.partition(",")
        options = f",{options}" if sep else ""
        if _is_plain_cdrom(options):
            continue

        new_path = path.strip().replace(f"{old_vmid}/", f"{new_vmid}/")
        new_path = vm_token.sub(lambda _: f"vm-{new_vmid}-", new_path)
        payload[key] = f"{clone_storage}:{new_path}{options}"


def remap_disk_storage(payload: Dict[str, str], clone_storage: str) -> None:
    """Swap only the storage prefix of every disk, keeping file name and options."""
    for key in [k for k in payload if DISK_KEY_RE.match(k)]:
        raw = payload[key]
        if not raw or ":" not in raw or _is_plain_cdrom(raw):
            continue
        definition = raw.split(":", 1)[1]
        payload[key] = f"{clone_storage}:{definition}"


def remap_storage_and_vmid(
    value: str,
    old_storage: str,
    new_storage: str,
    old_vmid: str,
    new_vmid: str,
) -> str:
    """
    Rewrite storage prefixes, id path segments and ``vm-<id>-`` tokens in one value.

    The storage name is replaced only where it stands as a ``<storage>:``
    prefix; the id only where it is a whole path segment followed by a
    separator.
    """
    if not value:
        return value
    updated = value

    if old_storage and new_storage:
        storage_prefix = re.compile(
            r"(?<![A-Za-z0-9_])" + re.escape(old_storage) + r"(?=:)", re.IGNORECASE
        )
        updated = storage_prefix.sub(lambda _: new_storage, updated)

    if old_vmid and new_vmid:
        vmid_segment = re.compile(r"(?:^|(?<=[:/\\]))" + re.escape(old_vmid) + r"(?=[/\\])")
        updated = vmid_segment.sub(lambda _: new_vmid, updated)

        vm_token = re.compile(r"\bvm-" + re.escape(old_vmid) + "-", re.IGNORECASE)
        updated = vm_token.sub(lambda _: f"vm-{new_vmid}-", updated)

    return updated


def replace_storage_everywhere(payload: Dict[str, str], old_storage: str, new_storage: str) -> None:
    """Case-insensitive substitution of the storage name in every value."""
    pattern = re.compile(re.escape(old_storage), re.IGNORECASE)
    for key, value in payload.items():
        if value:
            payload[key] = pattern.sub(lambda _: new_storage, value)


def set_link_down(payload: Dict[str, str]) -> None:
    """Mark every network adapter ``link_down=1``."""
    for key in [k for k in payload if NET_KEY_RE.match(k)]:
        definition = payload[key]
        if LINK_DOWN_RE.search(definition):
            payload[key] = LINK_DOWN_RE.sub("link_down=1", definition)
        else:
            payload[key] = f"{definition},link_down=1"


def regenerate_identity(payload: Dict[str, str], new_uuid: str, new_vmgenid: str) -> None:
    """Replace the SMBIOS uuid (keeping other smbios1 fields) and the generation id."""
    smbios = payload.get("smbios1")
    if smbios is not None:
        parts = [p.strip() for p in smbios.split(",") if p.strip()]
        parts = [p for p in parts if not p.lower().startswith("uuid=")]
        parts.append(f"uuid={new_uuid}")
        payload["smbios1"] = ",".join(parts)
    else:
        payload["smbios1"] = f"uuid={new_uuid}"
    payload["vmgenid"] = new_vmgenid


def serialize_vm_config(payload: Mapping[str, str], snapshots: Mapping[str, Mapping[str, str]]) -> str:
    """Render ``key: value`` lines followed by one ``[name]`` section per snapshot."""
    lines = [f"{key}: {value}" for key, value in payload.items()]
    for name, section in snapshots.items():
        lines.append(f"[{name}]")
        lines.extend(f"{key}: {value}" for key, value in section.items())
    return "\n".join(lines) + "\n"


def _snapshot_sections(document: Mapping[str, Any]) -> List[Tuple[str, Dict[str, str]]]:
    snapshots = document.get("snapshots")
    if not isinstance(snapshots, Mapping):
        return []
    return [
        (name, {k: ("" if v is None else str(v)) for k, v in (section or {}).items()})
        for name, section in snapshots.items()
    ]


def _config_section(document: Mapping[str, Any], *keys: str) -> Mapping[str, Any]:
    for key in keys:
        section = document.get(key)
        if isinstance(section, Mapping):
            return section
    raise ValidationFailure("Stored VM configuration has no 'config' section.")


def peek_old_vmid(document: Mapping[str, Any]) -> str:
    """Old VM id of a stored configuration document."""
    return extract_old_vmid(flatten_config(_config_section(document, "config")))


def build_restored_config(
    document: Mapping[str, Any],
    new_vmid: str,
    clone_storage: str,
    new_vm_name: Optional[str] = None,
    start_disconnected: bool = False,
    generate_new_uuid: bool = False,
) -> RewrittenConfig:
    """
    Rewrite a stored configuration for a restore under a new VM id.

    Disk paths, ``vm-<id>-`` tokens and the storage name are moved to the
    clone in the live configuration and in every snapshot section.

    Args:
        document: Stored ``{"config": ..., "snapshots": ...}`` document
        new_vmid: Id allocated for the restored VM
        clone_storage: Proxmox storage name of the mounted clone
        new_vm_name: Name for the restored VM
        start_disconnected: Inject ``link_down=1`` into every NIC
        generate_new_uuid: Fresh SMBIOS uuid and vmgenid

    Returns:
        RewrittenConfig ready for upload
    """
    payload = flatten_config(_config_section(document, "config"))
    old_storage = detect_storage_name(payload, include_ide=False)

    if new_vm_name and new_vm_name.strip():
        payload["name"] = new_vm_name.strip()
    payload.pop("meta", None)
    payload.pop("digest", None)
    payload["protection"] = "0"

    if start_disconnected:
        set_link_down(payload)

    old_vmid = extract_old_vmid(payload)

    update_disk_paths(payload, old_vmid, new_vmid, clone_storage)
    replace_storage_everywhere(payload, old_storage, clone_storage)
    if "vmstate" in payload:
        payload["vmstate"] = remap_storage_and_vmid(payload["vmstate"], old_storage, clone_storage, old_vmid, new_vmid)

    new_uuid = new_vmgen = None
    if generate_new_uuid:
        new_uuid, new_vmgen = str(uuid.uuid4()), str(uuid.uuid4())
        regenerate_identity(payload, new_uuid, new_vmgen)

    snapshots: Dict[str, Dict[str, str]] = {}
    for name, section in _snapshot_sections(document):
        if start_disconnected:
            set_link_down(section)
        if new_uuid and new_vmgen:
            regenerate_identity(section, new_uuid, new_vmgen)
        update_disk_paths(section, old_vmid, new_vmid, clone_storage)
        replace_storage_everywhere(section, old_storage, clone_storage)
        if "vmstate" in section:
            section["vmstate"] = remap_storage_and_vmid(section["vmstate"], old_storage, clone_storage, old_vmid, new_vmid)
        snapshots[name] = section

    return RewrittenConfig(
        vmid=str(new_vmid),
        text=serialize_vm_config(payload, snapshots),
        payload=payload,
        old_vmid=old_vmid,
        old_storage=old_storage,
        snapshots=snapshots,
    )


def build_replacement_config(
    document: Mapping[str, Any],
    vmid: str,
    clone_storage: str,
    start_disconnected: bool = False,
) -> RewrittenConfig:
    """
    Rewrite a stored configuration to replace the original VM under its own id.

    Only the storage prefix of disk entries changes; the VM id and file
    names are kept. Plain CD-ROM entries are left alone unless cloud-init.
    """
    payload = flatten_config(_config_section(document, "config", "data"))
    vmid = str(int(vmid))

    if start_disconnected:
        set_link_down(payload)

    old_storage = detect_storage_name(payload, include_ide=True)

    payload.pop("meta", None)
    payload.pop("digest", None)
    payload["protection"] = "0"
    payload["storage"] = clone_storage

    remap_disk_storage(payload, clone_storage)
    replace_storage_everywhere(payload, old_storage, clone_storage)
    if "vmstate" in payload:
        payload["vmstate"] = remap_storage_and_vmid(payload["vmstate"], old_storage, clone_storage, vmid, vmid)

    snapshots: Dict[str, Dict[str, str]] = {}
    for name, section in _snapshot_sections(document):
        if start_disconnected:
            set_link_down(section)
        remap_disk_storage(section, clone_storage)
        replace_storage_everywhere(section, old_storage, clone_storage)
        if "vmstate" in section:
            section["vmstate"] = remap_storage_and_vmid(section["vmstate"], old_storage, clone_storage, vmid, vmid)
        snapshots[name] = section

    return RewrittenConfig(
        vmid=vmid,
        text=serialize_vm_config(payload, snapshots),
        payload=payload,
        old_vmid=vmid,
        old_storage=old_storage,
        snapshots=snapshots,
    )


def mac_regeneration_values(payload: Mapping[str, str]) -> List[Tuple[str, str]]:
    """
    New ``netN`` definitions that make Proxmox assign a fresh MAC.

    The model token loses its ``=<mac>`` part; every other option is kept.

    Returns:
        List of (adapter index, definition) sorted by key
    """
    values = []
    for key in sorted((k for k in payload if NET_KEY_RE.match(k)), key=str.lower):
        parts = [p.strip() for p in payload[key].split(",") if p.strip()]
        if not parts:
            continue
        model_only = parts[0].split("=", 1)[0]
        index = NET_KEY_RE.match(key).group(1)
        values.append((index, ",".join([model_only] + parts[1:])))
    return values
