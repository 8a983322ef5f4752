"""State held by the simulated compute service: groups, reservations, instances."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

__all__ = [
    "OWNER_ID",
    "EC2Error",
    "InstanceState",
    "PENDING",
    "RUNNING",
    "SHUTTING_DOWN",
    "TERMINATED",
    "STOPPED",
    "InstanceStateChange",
    "PermKey",
    "UserSecurityGroup",
    "IPPerm",
    "SecurityGroup",
    "Reservation",
    "Instance",
]

OWNER_ID = "9876"

_NUMBER = re.compile(r"[+-]?[0-9]+")


def _atoi(value: str) -> int:
    if not _NUMBER.fullmatch(value):
        raise ValueError(f"invalid number {value!r}")
    return int(value)


class EC2Error(Exception):
    """An error to be reported to a client of the simulated service."""

    def __init__(self, status_code: int, code: str, message: str, request_id: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class InstanceState:
    code: int
    name: str


PENDING = InstanceState(0, "pending")
RUNNING = InstanceState(16, "running")
SHUTTING_DOWN = InstanceState(32, "shutting-down")
TERMINATED = InstanceState(16, "terminated")
STOPPED = InstanceState(16, "stopped")


@dataclass(frozen=True)
class InstanceStateChange:
    instance_id: str
    previous_state: InstanceState
    current_state: InstanceState


@dataclass(frozen=True)
class PermKey:
    """Permission for one group or one address range (not both) to reach a port range."""

    protocol: str
    from_port: int
    to_port: int
    group: SecurityGroup | None = None
    ip_addr: str = ""


@dataclass
class UserSecurityGroup:
    id: str = ""
    name: str = ""
    owner_id: str = ""


@dataclass
class IPPerm:
    """Permissions sharing one protocol and port range."""

    protocol: str = ""
    from_port: int = 0
    to_port: int = 0
    source_ips: list[str] = field(default_factory=list)
    source_groups: list[UserSecurityGroup] = field(default_factory=list)


@dataclass(eq=False)
class SecurityGroup:
    """A security group; groups compare by identity."""

    id: str
    name: str
    description: str = ""
    perms: set[PermKey] = field(default_factory=set, repr=False)

    def _has_perm(self, test: Callable[[PermKey], bool]) -> bool:
        return any(test(key) for key in self.perms)

    def match_attr(self, attr: str, value: str) -> bool:
        """Report whether ``attr`` of this group matches ``value``."""
        if attr == "description":
            return self.description == value
        if attr == "group-id":
            return self.id == value
        if attr == "group-name":
            return self.name == value
        if attr == "ip-permission.cidr":
            return self._has_perm(lambda k: k.ip_addr == value)
        if attr == "ip-permission.group-name":
            return self._has_perm(lambda k: k.group is not None and k.group.name == value)
        if attr == "ip-permission.from-port":
            port = _atoi(value)
            return self._has_perm(lambda k: k.from_port == port)
        if attr == "ip-permission.to-port":
            port = _atoi(value)
            return self._has_perm(lambda k: k.to_port == port)
        if attr == "ip-permission.protocol":
            return self._has_perm(lambda k: k.protocol == value)
        if attr == "owner-id":
            return value == OWNER_ID
        raise ValueError(f"unknown attribute {attr!r}")

    def ec2_perms(self) -> list[IPPerm]:
        """Return the granted permissions grouped by protocol and port range."""
        grouped: dict[tuple[str, int, int], IPPerm] = {}
        for key in self.perms:
            perm = grouped.setdefault(
                (key.protocol, key.from_port, key.to_port),
                IPPerm(protocol=key.protocol, from_port=key.from_port, to_port=key.to_port),
            )
            if key.group is not None:
                perm.source_groups.append(
                    UserSecurityGroup(id=key.group.id, name=key.group.name, owner_id=OWNER_ID)
                )
            else:
                perm.source_ips.append(key.ip_addr)
        return list(grouped.values())


@dataclass(eq=False)
class Reservation:
    """A set of instances started together with the same groups."""

    id: str
    groups: list[SecurityGroup] = field(default_factory=list)
    instances: dict[str, Instance] = field(default_factory=dict, repr=False)

    def has_running_machine(self) -> bool:
        """Report whether any instance is neither shutting down nor terminated."""
        stopped_codes = {SHUTTING_DOWN.code, TERMINATED.code}
        return any(inst.state.code not in stopped_codes for inst in self.instances.values())


@dataclass(eq=False)
class Instance:
    """A simulated instance; it registers itself with its reservation."""

    id: str
    inst_type: str
    image_id: str
    state: InstanceState
    reservation: Reservation = field(repr=False)
    user_data: bytes = b""

    def __post_init__(self) -> None:
        self.reservation.instances[self.id] = self

    def match_attr(self, attr: str, value: str) -> bool:
        """Report whether ``attr`` of this instance matches ``value``."""
        if attr == "architecture":
            return value == "i386"
        if attr == "instance-id":
            return self.id == value
        if attr == "group-id":
            return any(g.id == value for g in self.reservation.groups)
        if attr == "group-name":
            return any(g.name == value for g in self.reservation.groups)
        if attr == "image-id":
            return value == self.image_id
        if attr == "instance-state-code":
            return _atoi(value) & 0xFF == self.state.code
        if attr == "instance-state-name":
            return value == self.state.name
        raise ValueError(f"unknown attribute {attr!r}")

    def terminate(self) -> InstanceStateChange:
        """Move the instance to shutting-down and report the change."""
        previous = self.state
        self.state = SHUTTING_DOWN
        return InstanceStateChange(self.id, previous, self.state)