"""
Orchestration services: hypervisor and storage collaborators, job bookkeeping,
backup and restore workflows and the background drivers.
"""
