"""
Inventory models: Proxmox clusters and hosts, NetApp controllers, the volumes
selected for backup and the SnapMirror relations between them.

These rows are maintained by configuration management and the inventory
collector; the orchestration engine reads them and only writes cluster
health and cached credentials.
"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy import String, Boolean, ForeignKey, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bareprox.models.base import Base


class ProxmoxCluster(Base):
    """A Proxmox VE cluster and the credentials used against its API."""

    __tablename__ = "proxmox_clusters"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    password_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # API token mode
    use_api_token: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    api_token_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    api_token_secret_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cached ticket (ticket mode)
    ticket_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    csrf_token_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ticket_issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    last_status: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    hosts: Mapped[List["ProxmoxHost"]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProxmoxHost.id",
    )

    @property
    def ssh_user(self) -> str:
        """Login name without the ``@realm`` suffix."""
        return self.username.split("@", 1)[0]


class ProxmoxHost(Base):
    """A node of a Proxmox cluster."""

    __tablename__ = "proxmox_hosts"

    cluster_id: Mapped[int] = mapped_column(
        ForeignKey("proxmox_clusters.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    host_address: Mapped[str] = mapped_column(String(255), nullable=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_status: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    cluster: Mapped["ProxmoxCluster"] = relationship(back_populates="hosts")


class NetappController(Base):
    """An ONTAP cluster management endpoint."""

    __tablename__ = "netapp_controllers"

    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(255), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    password_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SelectedNetappVolume(Base):
    """A volume that is exposed to Proxmox as NFS storage and selected for backup."""

    __tablename__ = "selected_netapp_volumes"

    controller_id: Mapped[int] = mapped_column(
        ForeignKey("netapp_controllers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    vserver: Mapped[str] = mapped_column(String(255), nullable=False)
    volume_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    uuid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mount_ip: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    export_policy_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    snapshot_locking_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class SnapMirrorRelation(Base):
    """A source to destination volume mirroring pair reported by ONTAP."""

    __tablename__ = "snapmirror_relations"

    uuid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    source_controller_id: Mapped[int] = mapped_column(
        ForeignKey("netapp_controllers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    source_svm: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_volume: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    destination_controller_id: Mapped[int] = mapped_column(
        ForeignKey("netapp_controllers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    destination_svm: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    destination_volume: Mapped[str] = mapped_column(String(255), nullable=False)
    relationship_type: Mapped[str] = mapped_column(String(50), default="vault", nullable=False)
    policy_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    healthy: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    lag_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_transfer_state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
