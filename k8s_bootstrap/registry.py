#!/usr/bin/env python3
"""
@format
Membership registry: which etcd member runs on which instance.

Rows live in a DynamoDB table keyed by (ClusterId, MemberId) with GSIs on
InstanceId and PrivateIp. Records are never deleted; removal is a status
transition so the history of every member stays auditable.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from k8s_bootstrap.aws import DynamoTable, FleetManager
from k8s_bootstrap.common import log_info, log_warn, utc_now_iso

INSTANCE_INDEX = "InstanceIdIndex"
PRIVATE_IP_INDEX = "PrivateIpIndex"


class MemberStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"
    REMOVAL_FAILED = "REMOVAL_FAILED"


class MemberId(str):
    """
    An etcd raft member id, normalized to lowercase hex without ``0x``.

    ``etcdctl -w json`` reports ids as decimal integers while ``etcdctl
    member remove`` expects hex; both forms compare equal once wrapped.

        >>> MemberId(10276657743932975437)
        '8e9e05c52164694d'
        >>> MemberId("0x8E9E05C52164694D")
        '8e9e05c52164694d'
    """

    def __new__(cls, value: Union[int, str, "MemberId"]):
        if isinstance(value, MemberId):
            return super().__new__(cls, str(value))
        if isinstance(value, bool):
            raise ValueError(f"invalid member id: {value!r}")
        if isinstance(value, int):
            if value < 0:
                raise ValueError(f"invalid member id: {value!r}")
            return super().__new__(cls, format(value, "x"))

        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if not text:
            raise ValueError(f"invalid member id: {value!r}")
        try:
            int(text, 16)
        except ValueError:
            raise ValueError(f"invalid member id: {value!r}") from None
        return super().__new__(cls, text)

    @classmethod
    def from_decimal(cls, value: Union[int, str]) -> "MemberId":
        return cls(int(value))


@dataclass
class Member:
    """One etcd member record."""
    cluster_id: str
    member_id: MemberId
    instance_id: str
    private_ip: str
    hostname: str = ""
    status: MemberStatus = MemberStatus.ACTIVE
    created_at: str = ""
    removed_at: str = ""

    def to_item(self) -> dict:
        item = {
            "ClusterId": self.cluster_id,
            "MemberId": str(self.member_id),
            "EtcdMemberId": str(self.member_id),
            "InstanceId": self.instance_id,
            "PrivateIp": self.private_ip,
            "Hostname": self.hostname,
            "Status": MemberStatus(self.status).value,
            "CreatedAt": self.created_at or utc_now_iso(),
            "UpdatedAt": utc_now_iso(),
        }
        if self.removed_at:
            item["RemovedAt"] = self.removed_at
        return item

    @classmethod
    def from_item(cls, item: dict) -> "Member":
        return cls(
            cluster_id=item["ClusterId"],
            member_id=MemberId(item.get("EtcdMemberId") or item["MemberId"]),
            instance_id=item.get("InstanceId", ""),
            private_ip=item.get("PrivateIp", ""),
            hostname=item.get("Hostname", ""),
            status=MemberStatus(item.get("Status", MemberStatus.ACTIVE.value)),
            created_at=item.get("CreatedAt", ""),
            removed_at=item.get("RemovedAt", ""),
        )

    @property
    def key(self) -> dict:
        return {"ClusterId": self.cluster_id, "MemberId": str(self.member_id)}


def _prefer_active(members: list[Member]) -> Optional[Member]:
    if not members:
        return None
    active = [m for m in members if m.status is MemberStatus.ACTIVE]
    pool = active or members
    return max(pool, key=lambda m: m.created_at)


class MembershipRegistry:
    """Etcd member records for a single cluster."""

    def __init__(self, table: DynamoTable, fleet: FleetManager, cluster_id: str):
        self._table = table
        self._fleet = fleet
        self.cluster_id = cluster_id

    def register(self, member: Member) -> Member:
        """
        Record ``member`` as the ACTIVE etcd member for its instance.

        Re-registering the same (instance, member id) only refreshes the
        row. Any other ACTIVE record for the same instance or private IP is
        superseded and marked REMOVED, so one etcd process never has two
        ACTIVE records.
        """
        member.cluster_id = self.cluster_id
        member.status = MemberStatus.ACTIVE

        existing = self._find(INSTANCE_INDEX, "InstanceId", member.instance_id)
        if member.private_ip:
            existing += self._find(PRIVATE_IP_INDEX, "PrivateIp", member.private_ip)

        seen = set()
        for record in existing:
            if record.member_id in seen:
                continue
            seen.add(record.member_id)
            if record.member_id == member.member_id:
                member.created_at = record.created_at
                continue
            if record.status is MemberStatus.ACTIVE:
                log_warn(
                    f"Superseding ACTIVE member record {record.member_id}",
                    instance_id=record.instance_id,
                    member_id=record.member_id,
                )
                self.mark_removed(record, MemberStatus.REMOVED)

        self._table.put(member.to_item())
        log_info(
            f"✓ Registered etcd member {member.member_id}",
            instance_id=member.instance_id,
            private_ip=member.private_ip,
        )
        return member

    def lookup_by_instance(self, instance_id: str) -> Optional[Member]:
        return _prefer_active(self._find(INSTANCE_INDEX, "InstanceId", instance_id))

    def lookup_by_ip(self, private_ip: str) -> Optional[Member]:
        return _prefer_active(self._find(PRIVATE_IP_INDEX, "PrivateIp", private_ip))

    def active_members(self) -> list[Member]:
        items = self._table.query_partition("ClusterId", self.cluster_id)
        members = [Member.from_item(item) for item in items]
        return [m for m in members if m.status is MemberStatus.ACTIVE]

    def lookup_healthy_control_plane_instances(
        self, exclude_instance_id: Optional[str] = None,
    ) -> list[str]:
        """
        Instances backing an ACTIVE member that the fleet reports healthy.

        Args:
            exclude_instance_id: Instance to leave out (usually the caller
                or the node being terminated).
        """
        healthy = set(self._fleet.healthy_instances())
        instances = {
            m.instance_id for m in self.active_members()
            if m.instance_id in healthy
        }
        instances.discard(exclude_instance_id)
        return sorted(instances)

    def mark_removed(self, member: Member,
                     status: MemberStatus = MemberStatus.REMOVED,
                     request_id: Optional[str] = None) -> None:
        """Transition a record to REMOVED or REMOVAL_FAILED."""
        values = {
            "Status": MemberStatus(status).value,
            "RemovedAt": utc_now_iso(),
            "UpdatedAt": utc_now_iso(),
        }
        if request_id:
            values["RequestId"] = request_id
        self._table.update(member.key, values)
        member.status = MemberStatus(status)
        member.removed_at = values["RemovedAt"]
        log_info(f"Member {member.member_id} marked {member.status.value}",
                 instance_id=member.instance_id)

    def _find(self, index: str, attribute: str, value: str) -> list[Member]:
        items = self._table.query_index(index, attribute, value)
        return [
            Member.from_item(item) for item in items
            if item.get("ClusterId") == self.cluster_id
        ]
