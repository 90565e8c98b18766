"""
BareProx: backup and restore orchestration for Proxmox VMs on NetApp storage.
"""
__version__ = "1.0.0"
