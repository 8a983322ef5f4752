"""A simulated compute service that records every request it serves.

Errors can be provoked through ordinary requests, and the recorded actions
let a test check afterwards what a client asked for.
"""

from __future__ import annotations

import base64
import binascii
import itertools
import re
import threading
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import NoReturn, Protocol
from urllib.parse import parse_qs, urlsplit

from awsquery.ec2test.filter import Filter, FilterError
from awsquery.ec2test.model import (
    OWNER_ID,
    PENDING,
    EC2Error,
    Instance,
    InstanceState,
    IPPerm,
    PermKey,
    Reservation,
    SecurityGroup,
    UserSecurityGroup,
)

__all__ = ["CONTENT_TYPE", "Action", "Server"]

CONTENT_TYPE = 'xml version="1.0" encoding="UTF-8"'

Form = dict[str, list[str]]

_NUMBER = re.compile(r"[+-]?[0-9]+")
_IP_PERM = re.compile(r"IpPermissions\.([+-]?[0-9]+)\.(\S+)")
_INDEXED = re.compile(r"([+-]?[0-9]+)\.(\S+)")
_SEC_GROUP = re.compile(r"sg-[a-z0-9]+")
_IP_RANGE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+/[0-9]+")
_OWNER = re.compile(r"[0-9]+")


class _GroupRef(Protocol):
    id: str
    name: str


@dataclass
class Action:
    """One request served, with its response or the error it produced."""

    request_id: str = ""
    request: Form = field(default_factory=dict)
    response: ET.Element | None = None
    err: EC2Error | None = None


def _fatal(status_code: int, code: str, message: str) -> NoReturn:
    raise EC2Error(status_code, code, message)


def _atoi(value: str) -> int:
    if not _NUMBER.fullmatch(value):
        _fatal(400, "InvalidParameterValue", f"bad number: invalid syntax {value!r}")
    return int(value)


def _normalize(form: Mapping[str, Sequence[str] | str]) -> Form:
    result: Form = {}
    for key, values in form.items():
        listed = [values] if isinstance(values, str) else list(values)
        if listed:
            result[key] = listed
    return result


def _get(form: Form, key: str) -> str:
    values = form.get(key)
    return values[0] if values else ""


def _sub(parent: ET.Element, tag: str, text: str | int | bool | None = None) -> ET.Element:
    elem = ET.SubElement(parent, tag)
    if text is not None:
        elem.text = str(text).lower() if isinstance(text, bool) else str(text)
    return elem


def _instance_xml(parent: ET.Element, inst: Instance) -> None:
    item = _sub(parent, "item")
    _sub(item, "instanceId", inst.id)
    _sub(item, "imageId", inst.image_id)
    _sub(item, "instanceType", inst.inst_type)
    _sub(item, "dnsName", f"{inst.id}.example.com")


def _state_xml(parent: ET.Element, tag: str, state: InstanceState) -> None:
    elem = _sub(parent, tag)
    _sub(elem, "code", state.code)
    _sub(elem, "name", state.name)


def _simple_response(tag: str, request_id: str) -> ET.Element:
    root = ET.Element(tag)
    _sub(root, "requestId", request_id)
    return root


def _error_xml(err: EC2Error) -> str:
    root = ET.Element("Response")
    _sub(root, "RequestId", err.request_id)
    error = _sub(_sub(root, "Errors"), "Error")
    _sub(error, "Code", err.code)
    _sub(error, "Message", err.message)
    _sub(error, "RequestId", "")
    return ET.tostring(root, encoding="unicode")


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], owner: Server) -> None:
        super().__init__(address, _RequestHandler)
        self.owner = owner


class _RequestHandler(BaseHTTPRequestHandler):
    server: _HTTPServer

    def _serve(self, body: str = "") -> None:
        form: Form = {}
        for source in (body, urlsplit(self.path).query):
            for key, values in parse_qs(source, keep_blank_values=True).items():
                form.setdefault(key, []).extend(values)
        status, payload = self.server.owner.handle(form)
        data = payload.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", CONTENT_TYPE)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self) -> None:
        self._serve()

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        self._serve(self.rfile.read(length).decode("utf-8", "replace"))

    def log_message(self, format: str, *args: object) -> None:
        pass


class Server:
    """A simulated compute service listening on a local port."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._actions: list[Action] = []
        self._instances: dict[str, Instance] = {}
        self._reservations: dict[str, Reservation] = {}
        self._groups: dict[str, SecurityGroup] = {}
        self._instance_ids = itertools.count()
        self._request_ids = itertools.count()
        self._reservation_ids = itertools.count()
        self._group_ids = itertools.count()
        self._initial_state: InstanceState = PENDING

        default = SecurityGroup(
            id=f"sg-{next(self._group_ids)}", name="default", description="default group"
        )
        default.perms = {
            PermKey("icmp", -1, -1, group=default),
            PermKey("tcp", 0, 65535, group=default),
            PermKey("udp", 0, 65535, group=default),
        }
        self._groups[default.id] = default

        try:
            self._httpd = _HTTPServer(("localhost", 0), self)
        except OSError as err:
            raise OSError(f"cannot listen on localhost: {err}") from err
        host, port = self._httpd.server_address[:2]
        self.url = f"http://{host}:{port}"
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()
        self._closed = False

    def __enter__(self) -> Server:
        return self

    def __exit__(self, *exc: object) -> None:
        self.quit()

    def quit(self) -> None:
        """Stop listening."""
        if self._closed:
            return
        self._closed = True
        self._httpd.shutdown()
        self._httpd.server_close()
        self._thread.join()

    @property
    def actions(self) -> list[Action]:
        """The actions served so far, oldest first."""
        with self._lock:
            return list(self._actions)

    def set_initial_instance_state(self, state: InstanceState) -> None:
        """Set the state that new instances start in."""
        with self._lock:
            self._initial_state = state

    def instance(self, instance_id: str) -> Instance | None:
        """Return the instance with the given id, or None."""
        with self._lock:
            return self._instances.get(instance_id)

    def new_instances(
        self,
        n: int,
        inst_type: str,
        image_id: str,
        state: InstanceState,
        groups: Iterable[_GroupRef] = (),
    ) -> list[str]:
        """Start ``n`` instances in one reservation and return their ids.

        Every group must already exist; EC2Error is raised otherwise.
        """
        with self._lock:
            resolved = []
            for ref in groups:
                group = self._group(ref.id, ref.name)
                if group is None:
                    _fatal(400, "InvalidGroup.NotFound", f"no such group {ref.id or ref.name!r}")
                resolved.append(group)
            reservation = self._new_reservation(resolved)
            return [
                self._new_instance(reservation, inst_type, image_id, state).id for _ in range(n)
            ]

    def handle(self, form: Mapping[str, Sequence[str] | str]) -> tuple[int, str]:
        """Serve one request given as form fields; return status and XML body."""
        values = _normalize(form)
        with self._lock:
            action = Action(request_id=f"req{next(self._request_ids)}", request=values)
            self._actions.append(action)
            try:
                handler = self._ACTIONS.get(_get(values, "Action"))
                if handler is None:
                    _fatal(400, "InvalidParameterValue", "Unrecognized Action")
                response = handler(self, values, action.request_id)
            except EC2Error as err:
                err.request_id = action.request_id
                action.err = err
                return err.status_code, _error_xml(err)
            action.response = response
            return 200, ET.tostring(response, encoding="unicode")

    # --- state helpers

    def _group(self, group_id: str = "", name: str = "") -> SecurityGroup | None:
        if group_id:
            return self._groups.get(group_id)
        return next((g for g in self._groups.values() if g.name == name), None)

    def _new_reservation(self, groups: list[SecurityGroup]) -> Reservation:
        reservation = Reservation(id=f"r-{next(self._reservation_ids)}", groups=groups)
        self._reservations[reservation.id] = reservation
        return reservation

    def _new_instance(
        self, reservation: Reservation, inst_type: str, image_id: str, state: InstanceState
    ) -> Instance:
        inst = Instance(
            id=f"i-{next(self._instance_ids)}",
            inst_type=inst_type,
            image_id=image_id,
            state=state,
            reservation=reservation,
        )
        self._instances[inst.id] = inst
        return inst

    def _form_groups(self, form: Form) -> list[SecurityGroup]:
        groups = []
        for key, values in form.items():
            if key.startswith("SecurityGroupId."):
                group = self._groups.get(values[0])
                if group is None:
                    _fatal(400, "InvalidGroup.NotFound", f"unknown group id {values[0]!r}")
                groups.append(group)
            elif key.startswith("SecurityGroup."):
                found = None
                for group in self._groups.values():
                    if group.name == values[0]:
                        found = group
                if found is None:
                    _fatal(400, "InvalidGroup.NotFound", f"unknown group name {values[0]!r}")
                groups.append(found)
        return groups

    def _form_group(self, form: Form) -> SecurityGroup:
        group = self._group(_get(form, "GroupId"), _get(form, "GroupName"))
        if group is None:
            _fatal(400, "InvalidGroup.NotFound", "group not found")
        return group

    # --- actions

    def _run_instances(self, form: Form, request_id: str) -> ET.Element:
        min_count = _atoi(_get(form, "MinCount"))
        max_count = _atoi(_get(form, "MaxCount"))
        if min_count < 0 or max_count < 1:
            _fatal(400, "InvalidParameterValue", "bad values for MinCount or MaxCount")
        if min_count > max_count:
            _fatal(400, "InvalidParameterCombination", "MinCount is greater than MaxCount")
        user_data = b""
        data = _get(form, "UserData")
        if data:
            try:
                user_data = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as err:
                _fatal(400, "InvalidParameterValue", f"bad UserData value: {err}")

        inst_type = _get(form, "InstanceType")
        image_id = _get(form, "ImageId")
        reservation = self._new_reservation(self._form_groups(form))

        root = ET.Element("RunInstancesResponse")
        _sub(root, "requestId", request_id)
        _sub(root, "reservationId", reservation.id)
        _sub(root, "ownerId", OWNER_ID)
        instances = _sub(root, "instancesSet")
        for _ in range(max_count):
            inst = self._new_instance(reservation, inst_type, image_id, self._initial_state)
            inst.user_data = user_data
            _instance_xml(instances, inst)
        return root

    def _terminate_instances(self, form: Form, request_id: str) -> ET.Element:
        targets = []
        for key, values in form.items():
            if key.startswith("InstanceId."):
                inst = self._instances.get(values[0])
                if inst is None:
                    _fatal(400, "InvalidInstanceID.NotFound", f"no such instance id {values[0]!r}")
                targets.append(inst)
        root = ET.Element("TerminateInstancesResponse")
        _sub(root, "requestId", request_id)
        changes = _sub(root, "instancesSet")
        for inst in targets:
            change = inst.terminate()
            item = _sub(changes, "item")
            _sub(item, "instanceId", change.instance_id)
            _state_xml(item, "currentState", change.current_state)
            _state_xml(item, "previousState", change.previous_state)
        return root

    def _describe_instances(self, form: Form, request_id: str) -> ET.Element:
        wanted = set()
        for key, values in form.items():
            if not key.startswith("InstanceId."):
                continue
            inst = self._instances.get(values[0])
            if inst is None:
                _fatal(400, "InvalidInstanceID.NotFound", f"instance {values[0]!r} not found")
            wanted.add(inst)

        item_filter = Filter.from_form(form)
        root = ET.Element("DescribeInstancesResponse")
        _sub(root, "requestId", request_id)
        reservations = _sub(root, "reservationSet")
        for reservation in self._reservations.values():
            matched = []
            for inst in reservation.instances.values():
                if wanted and inst not in wanted:
                    continue
                try:
                    if item_filter.ok(inst):
                        matched.append(inst)
                except FilterError as err:
                    _fatal(400, "InvalidParameterValue", f"describe instances: {err}")
            if not matched:
                continue
            item = _sub(reservations, "item")
            _sub(item, "reservationId", reservation.id)
            _sub(item, "ownerId", OWNER_ID)
            group_set = _sub(item, "groupSet")
            for group in reservation.groups:
                entry = _sub(group_set, "item")
                _sub(entry, "groupId", group.id)
                _sub(entry, "groupName", group.name)
            instances = _sub(item, "instancesSet")
            for inst in matched:
                _instance_xml(instances, inst)
        return root

    def _create_security_group(self, form: Form, request_id: str) -> ET.Element:
        name = _get(form, "GroupName")
        if not name:
            _fatal(400, "InvalidParameterValue", "empty security group name")
        if self._group(name=name) is not None:
            _fatal(400, "InvalidGroup.Duplicate", f"group {name!r} already exists")
        group = SecurityGroup(
            id=f"sg-{next(self._group_ids)}",
            name=name,
            description=_get(form, "GroupDescription"),
        )
        self._groups[group.id] = group
        root = ET.Element("CreateSecurityGroupResponse")
        _sub(root, "requestId", request_id)
        _sub(root, "return", True)
        _sub(root, "groupId", group.id)
        return root

    def _describe_security_groups(self, form: Form, request_id: str) -> ET.Element:
        groups = []
        for key, values in form.items():
            if key.startswith("GroupName."):
                group = self._group(name=values[0])
            elif key.startswith("GroupId."):
                group = self._group(group_id=values[0])
            else:
                continue
            if group is None:
                _fatal(400, "InvalidGroup.NotFound", f"no such group {values[0]!r}")
            groups.append(group)
        if not groups:
            groups = list(self._groups.values())

        item_filter = Filter.from_form(form)
        root = ET.Element("DescribeSecurityGroupsResponse")
        _sub(root, "requestId", request_id)
        info = _sub(root, "securityGroupInfo")
        for group in groups:
            try:
                if not item_filter.ok(group):
                    continue
            except FilterError as err:
                _fatal(400, "InvalidParameterValue", f"describe security groups: {err}")
            item = _sub(info, "item")
            _sub(item, "ownerId", OWNER_ID)
            _sub(item, "groupId", group.id)
            _sub(item, "groupName", group.name)
            _sub(item, "groupDescription", group.description)
            perms = _sub(item, "ipPermissions")
            for perm in group.ec2_perms():
                entry = _sub(perms, "item")
                _sub(entry, "ipProtocol", perm.protocol)
                _sub(entry, "fromPort", perm.from_port)
                _sub(entry, "toPort", perm.to_port)
                sources = _sub(entry, "groups")
                for source in perm.source_groups:
                    src = _sub(sources, "item")
                    _sub(src, "userId", source.owner_id)
                    _sub(src, "groupId", source.id)
                    _sub(src, "groupName", source.name)
                ranges = _sub(entry, "ipRanges")
                for ip in perm.source_ips:
                    _sub(_sub(ranges, "item"), "cidrIp", ip)
        return root

    def _authorize_security_group_ingress(self, form: Form, request_id: str) -> ET.Element:
        group = self._form_group(form)
        perms = self._parse_perms(form)
        if any(p in group.perms for p in perms):
            _fatal(
                400,
                "InvalidPermission.Duplicate",
                "Permission has already been authorized on the specified group",
            )
        group.perms.update(perms)
        return _simple_response("AuthorizeSecurityGroupIngressResponse", request_id)

    def _revoke_security_group_ingress(self, form: Form, request_id: str) -> ET.Element:
        group = self._form_group(form)
        # Revoking a permission that was never granted is not an error.
        for perm in self._parse_perms(form):
            group.perms.discard(perm)
        return _simple_response("RevokeSecurityGroupIngressResponse", request_id)

    def _delete_security_group(self, form: Form, request_id: str) -> ET.Element:
        group = self._form_group(form)
        for reservation in self._reservations.values():
            if any(g is group for g in reservation.groups) and reservation.has_running_machine():
                _fatal(500, "InvalidGroup.InUse", "group is currently in use by a running instance")
        for other in self._groups.values():
            if other is group:
                continue
            if any(key.group is group for key in other.perms):
                _fatal(500, "InvalidGroup.InUse", f"group is currently in use by group {other.id!r}")
        del self._groups[group.id]
        return _simple_response("DeleteSecurityGroupResponse", request_id)

    def _parse_perms(self, form: Form) -> list[PermKey]:
        perms: dict[int, IPPerm] = {}
        source_groups: dict[tuple[int, int], UserSecurityGroup] = {}

        for name, values in form.items():
            value = values[0]
            match = _IP_PERM.match(name)
            if match is None:
                continue
            index = int(match.group(1))
            rest = match.group(2)
            perm = perms.get(index, IPPerm())
            if rest == "FromPort":
                perm.from_port = _atoi(value)
            elif rest == "ToPort":
                perm.to_port = _atoi(value)
            elif rest == "IpProtocol":
                if value not in ("tcp", "udp", "icmp"):
                    _atoi(value)
                perm.protocol = value
            elif rest.startswith("Groups."):
                sub = _INDEXED.match(rest[len("Groups."):])
                if sub is None:
                    continue
                key = (index, int(sub.group(1)))
                source = source_groups.get(key, UserSecurityGroup())
                field_name = sub.group(2)
                if field_name == "UserId":
                    if not _OWNER.fullmatch(value):
                        _fatal(400, "InvalidUserID.Malformed", f"Invalid user ID: {value!r}")
                    source.owner_id = value
                elif field_name == "GroupName":
                    source.name = value
                elif field_name == "GroupId":
                    if not _SEC_GROUP.fullmatch(value):
                        _fatal(400, "InvalidGroupId.Malformed", f"Invalid group ID: {value!r}")
                    source.id = value
                else:
                    _fatal(400, "UnknownParameter", f"unknown parameter {name!r}")
                source_groups[key] = source
            elif rest.startswith("IpRanges."):
                sub = _INDEXED.match(rest[len("IpRanges."):])
                if sub is None:
                    continue
                if sub.group(2) != "CidrIp":
                    _fatal(400, "UnknownParameter", f"unknown parameter {name!r}")
                if not _IP_RANGE.fullmatch(value):
                    _fatal(400, "InvalidPermission.Malformed", f"Invalid IP range: {value!r}")
                perm.source_ips.append(value)
            else:
                _fatal(400, "UnknownParameter", f"unknown parameter {name!r}")
            perms[index] = perm

        for (index, _), source in source_groups.items():
            perms.setdefault(index, IPPerm()).source_groups.append(source)

        result = []
        for perm in perms.values():
            if perm.from_port > perm.to_port:
                _fatal(400, "InvalidParameterValue", "invalid port range")
            for source in perm.source_groups:
                if source.owner_id and source.owner_id != OWNER_ID:
                    _fatal(400, "InvalidGroup.NotFound", f"group {source.name!r} not found")
                if source.id:
                    group = self._group(group_id=source.id)
                else:
                    group = self._group(name=source.name)
                if group is None:
                    _fatal(400, "InvalidGroup.NotFound", f"group {source.id or source.name!r} not found")
                result.append(PermKey(perm.protocol, perm.from_port, perm.to_port, group=group))
            for ip in perm.source_ips:
                result.append(PermKey(perm.protocol, perm.from_port, perm.to_port, ip_addr=ip))
        return result

    _ACTIONS: dict[str, Callable[[Server, Form, str], ET.Element]] = {
        "RunInstances": _run_instances,
        "TerminateInstances": _terminate_instances,
        "DescribeInstances": _describe_instances,
        "CreateSecurityGroup": _create_security_group,
        "DescribeSecurityGroups": _describe_security_groups,
        "DeleteSecurityGroup": _delete_security_group,
        "AuthorizeSecurityGroupIngress": _authorize_security_group_ingress,
        "RevokeSecurityGroupIngress": _revoke_security_group_ingress,
    }