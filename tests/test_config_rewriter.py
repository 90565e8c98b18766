"""
VM configuration parsing and restore-time rewriting.
"""
import pytest

from bareprox.core.exceptions import ValidationFailure
from bareprox.services.proxmox.config_rewriter import (
    build_replacement_config,
    build_restored_config,
    extract_old_vmid,
    flatten_config,
    mac_regeneration_values,
    parse_vm_config,
    peek_old_vmid,
    regenerate_identity,
    remap_storage_and_vmid,
)

CLONE = "restore_17_20261018100000"

RAW_CONFIG = """# managed by ansible
boot: order=scsi0;net0
cores: 2
digest: 0f3c1a
ide2: isostore:iso/debian-12.iso,media=cdrom
memory: 4096
meta: creation-qemu=8.1.2,ctime=1760000000
name: web
net0: virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,firewall=1
parent: pre-upgrade
scsi0: nfs1:101/vm-101-disk-0.qcow2,iothread=1,size=32G
scsi1: nfs1:101/vm-101-disk-1.qcow2,size=8G
smbios1: uuid=1111-2222,manufacturer=acme
vmgenid: 3333-4444

[pre-upgrade]
cores: 2
net0: virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,link_down=0
scsi0: nfs1:101/vm-101-disk-0.qcow2,size=32G
snaptime: 1760000000
vmstate: nfs1:101/vm-101-state-pre-upgrade.raw
"""


@pytest.fixture
def document():
    return parse_vm_config(RAW_CONFIG)


def test_parse_splits_live_config_and_snapshots(document):
    assert document["config"]["boot"] == "order=scsi0;net0"
    assert document["config"]["name"] == "web"
    assert list(document["snapshots"]) == ["pre-upgrade"]
    assert document["snapshots"]["pre-upgrade"]["snaptime"] == "1760000000"


def test_parse_without_snapshots_has_no_section():
    assert parse_vm_config("cores: 1\n\nname: tiny\n") == {"config": {"cores": "1", "name": "tiny"}}


def test_flatten_keeps_scalars_only():
    flat = flatten_config({"a": "x", "b": 2, "c": True, "d": None, "e": {"x": 1}, "f": 1.5})
    assert flat == {"a": "x", "b": "2", "f": "1.5"}


def test_old_vmid_from_disks_or_vmstate(document):
    assert peek_old_vmid(document) == "101"
    assert extract_old_vmid({"vmstate": "nfs1:230/vm-230-state-s1.raw"}) == "230"
    with pytest.raises(ValidationFailure):
        extract_old_vmid({"scsi0": "nfs1:base-image.qcow2"})
    with pytest.raises(ValidationFailure):
        extract_old_vmid({})


def test_restore_as_new_vm(document):
    rewritten = build_restored_config(document, "205", CLONE, new_vm_name=" web-restored ", start_disconnected=True)
    payload = rewritten.payload

    assert rewritten.vmid == "205"
    assert rewritten.old_vmid == "101"
    assert rewritten.old_storage == "nfs1"
    assert payload["name"] == "web-restored"
    assert "meta" not in payload and "digest" not in payload
    assert payload["protection"] == "0"
    assert payload["scsi0"] == f"{CLONE}:205/vm-205-disk-0.qcow2,iothread=1,size=32G"
    assert payload["scsi1"] == f"{CLONE}:205/vm-205-disk-1.qcow2,size=8G"
    assert payload["ide2"] == "isostore:iso/debian-12.iso,media=cdrom"
    assert payload["net0"].endswith(",firewall=1,link_down=1")
    assert payload["smbios1"] == "uuid=1111-2222,manufacturer=acme"

    snapshot = rewritten.snapshots["pre-upgrade"]
    assert snapshot["scsi0"] == f"{CLONE}:205/vm-205-disk-0.qcow2,size=32G"
    assert snapshot["vmstate"] == f"{CLONE}:205/vm-205-state-pre-upgrade.raw"
    assert snapshot["net0"] == "virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,link_down=1"

    assert rewritten.text.startswith("boot: order=scsi0;net0\n")
    assert "\n[pre-upgrade]\ncores: 2\n" in rewritten.text
    assert rewritten.text.endswith("\n")


def test_restore_as_new_vm_with_fresh_identity(document):
    rewritten = build_restored_config(document, "205", CLONE, generate_new_uuid=True)
    smbios = rewritten.payload["smbios1"]

    assert smbios.startswith("manufacturer=acme,uuid=")
    assert "1111-2222" not in smbios
    assert rewritten.payload["vmgenid"] != "3333-4444"
    new_uuid = smbios.rsplit("uuid=", 1)[1]
    assert rewritten.snapshots["pre-upgrade"]["smbios1"] == f"uuid={new_uuid}"
    assert rewritten.snapshots["pre-upgrade"]["vmgenid"] == rewritten.payload["vmgenid"]


def test_replace_original_keeps_vmid_and_file_names(document):
    rewritten = build_replacement_config(document, "0101", CLONE)
    payload = rewritten.payload

    assert rewritten.vmid == "101"
    assert rewritten.old_storage == "nfs1"
    assert payload["storage"] == CLONE
    assert payload["scsi0"] == f"{CLONE}:101/vm-101-disk-0.qcow2,iothread=1,size=32G"
    assert payload["ide2"] == "isostore:iso/debian-12.iso,media=cdrom"
    assert payload["net0"] == "virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,firewall=1"
    assert rewritten.snapshots["pre-upgrade"]["vmstate"] == f"{CLONE}:101/vm-101-state-pre-upgrade.raw"


def test_replace_original_reads_legacy_data_section():
    document = {"data": {"scsi0": "nfs1:101/vm-101-disk-0.raw", "name": "db"}}

    rewritten = build_replacement_config(document, "101", CLONE, start_disconnected=True)

    assert rewritten.payload["scsi0"] == f"{CLONE}:101/vm-101-disk-0.raw"
    assert rewritten.snapshots == {}


def test_missing_config_section_is_rejected():
    with pytest.raises(ValidationFailure):
        build_restored_config({"snapshots": {}}, "205", CLONE)


def test_remap_respects_token_boundaries():
    assert remap_storage_and_vmid("nfs1:101/vm-101-state.raw", "nfs1", "clone", "101", "205") == \
        "clone:205/vm-205-state.raw"
    untouched = "nfs10:1010/vm-1010-state.raw"
    assert remap_storage_and_vmid(untouched, "nfs1", "clone", "101", "205") == untouched


def test_regenerate_identity_without_smbios():
    payload = {"name": "web"}
    regenerate_identity(payload, "aaaa", "bbbb")
    assert payload == {"name": "web", "smbios1": "uuid=aaaa", "vmgenid": "bbbb"}


def test_mac_regeneration_drops_address_only():
    payload = {
        "net1": "e1000=AA:BB:CC:DD:EE:01,bridge=vmbr1",
        "net0": "virtio=BC:24:11:AA:BB:CC,bridge=vmbr0,tag=20",
        "scsi0": "nfs1:101/vm-101-disk-0.qcow2",
    }
    assert mac_regeneration_values(payload) == [
        ("0", "virtio,bridge=vmbr0,tag=20"),
        ("1", "e1000,bridge=vmbr1"),
    ]
