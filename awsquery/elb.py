"""Client for the Elastic Load Balancing query API."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests

from awsquery.signing import Auth, Region, sign_elb

__all__ = [
    "API_VERSION",
    "ELBError",
    "Listener",
    "Instance",
    "Tag",
    "InstanceState",
    "HealthCheck",
    "LoadBalancer",
    "AccessLog",
    "ConnectionDraining",
    "LoadBalancerAttributes",
    "CreateLoadBalancer",
    "SimpleResponse",
    "CreateLoadBalancerResponse",
    "DescribeLoadBalancersResponse",
    "InstancesResponse",
    "LoadBalancerTags",
    "DescribeTagsResponse",
    "ConfigureHealthCheckResponse",
    "DescribeInstanceHealthResponse",
    "ELB",
]

API_VERSION = "2012-06-01"


class ELBError(Exception):
    """An error reported by the load balancing service."""

    def __init__(self, status_code: int = 0, code: str = "", message: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.code:
            prefix = f"{self.code}: "
        elif self.status_code > 0:
            prefix = f"{self.status_code}: "
        else:
            prefix = ""
        return prefix + self.message


# ---------------------------------------------------------------------------
# XML helpers; element names are matched without their namespace.


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_all(elem: ET.Element, *names: str) -> list[ET.Element]:
    nodes = [elem]
    for name in names:
        nodes = [child for node in nodes for child in node if _local(child.tag) == name]
    return nodes


def _chardata(node: ET.Element) -> str:
    return (node.text or "") + "".join(child.tail or "" for child in node)


def _text(elem: ET.Element, *names: str) -> str:
    nodes = _find_all(elem, *names)
    return _chardata(nodes[0]) if nodes else ""


def _int(elem: ET.Element, *names: str) -> int:
    value = _text(elem, *names).strip()
    return int(value) if value else 0


def _texts(elem: ET.Element, *names: str) -> list[str]:
    return [_chardata(node) for node in _find_all(elem, *names)]


def _parse(body: bytes) -> ET.Element:
    return ET.fromstring(body.strip())


# ---------------------------------------------------------------------------
# Objects


@dataclass
class Listener:
    """A listener attached to a load balancer."""

    instance_port: int = 0
    instance_protocol: str = ""
    ssl_certificate_id: str = ""
    load_balancer_port: int = 0
    protocol: str = ""

    @classmethod
    def _from_xml(cls, elem: ET.Element) -> Listener:
        return cls(
            instance_port=_int(elem, "Listener", "InstancePort"),
            instance_protocol=_text(elem, "Listener", "InstanceProtocol"),
            ssl_certificate_id=_text(elem, "Listener", "SSLCertificateId"),
            load_balancer_port=_int(elem, "Listener", "LoadBalancerPort"),
            protocol=_text(elem, "Listener", "Protocol"),
        )


@dataclass
class Instance:
    """An instance attached to a load balancer."""

    instance_id: str = ""

    @classmethod
    def _from_xml(cls, elem: ET.Element) -> Instance:
        return cls(instance_id=_text(elem, "InstanceId"))


@dataclass
class Tag:
    """A key/value tag on a load balancer."""

    key: str = ""
    value: str = ""

    @classmethod
    def _from_xml(cls, elem: ET.Element) -> Tag:
        return cls(key=_text(elem, "Key"), value=_text(elem, "Value"))


@dataclass
class InstanceState:
    """The health of one instance behind a load balancer."""

    instance_id: str = ""
    description: str = ""
    state: str = ""
    reason_code: str = ""

    @classmethod
    def _from_xml(cls, elem: ET.Element) -> InstanceState:
        return cls(
            instance_id=_text(elem, "InstanceId"),
            description=_text(elem, "Description"),
            state=_text(elem, "State"),
            reason_code=_text(elem, "ReasonCode"),
        )


@dataclass
class HealthCheck:
    """Health check settings of a load balancer."""

    healthy_threshold: int = 0
    unhealthy_threshold: int = 0
    interval: int = 0
    target: str = ""
    timeout: int = 0

    @classmethod
    def _from_xml(cls, elem: ET.Element | None) -> HealthCheck:
        if elem is None:
            return cls()
        return cls(
            healthy_threshold=_int(elem, "HealthyThreshold"),
            unhealthy_threshold=_int(elem, "UnhealthyThreshold"),
            interval=_int(elem, "Interval"),
            target=_text(elem, "Target"),
            timeout=_int(elem, "Timeout"),
        )


@dataclass
class LoadBalancer:
    """A load balancer as described by the service."""

    load_balancer_name: str = ""
    listeners: list[Listener] = field(default_factory=list)
    instances: list[Instance] = field(default_factory=list)
    health_check: HealthCheck = field(default_factory=HealthCheck)
    availability_zones: list[str] = field(default_factory=list)
    hosted_zone_name_id: str = ""
    dns_name: str = ""
    security_groups: list[str] = field(default_factory=list)
    scheme: str = ""
    subnets: list[str] = field(default_factory=list)

    @classmethod
    def _from_xml(cls, elem: ET.Element) -> LoadBalancer:
        checks = _find_all(elem, "HealthCheck")
        return cls(
            load_balancer_name=_text(elem, "LoadBalancerName"),
            listeners=[Listener._from_xml(m) for m in _find_all(elem, "ListenerDescriptions", "member")],
            instances=[Instance._from_xml(m) for m in _find_all(elem, "Instances", "member")],
            health_check=HealthCheck._from_xml(checks[0] if checks else None),
            availability_zones=_texts(elem, "AvailabilityZones", "member"),
            hosted_zone_name_id=_text(elem, "CanonicalHostedZoneNameID"),
            dns_name=_text(elem, "DNSName"),
            security_groups=_texts(elem, "SecurityGroups", "member"),
            scheme=_text(elem, "Scheme"),
            subnets=_texts(elem, "Subnets", "member"),
        )


@dataclass
class AccessLog:
    emit_interval: int = 0
    enabled: bool = False
    s3_bucket_name: str = ""
    s3_bucket_prefix: str = ""


@dataclass
class ConnectionDraining:
    enabled: bool = False
    timeout: int = 0


@dataclass
class LoadBalancerAttributes:
    cross_zone_load_balancing_enabled: bool = False
    connection_settings_idle_timeout: int = 0
    connection_draining: ConnectionDraining = field(default_factory=ConnectionDraining)
    access_log: AccessLog = field(default_factory=AccessLog)


@dataclass
class CreateLoadBalancer:
    """Parameters of a CreateLoadBalancer request."""

    load_balancer_name: str
    avail_zones: list[str] = field(default_factory=list)
    listeners: list[Listener] = field(default_factory=list)
    internal: bool = False
    security_groups: list[str] = field(default_factory=list)
    subnets: list[str] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Responses


def _request_id(root: ET.Element) -> str:
    return _text(root, "ResponseMetadata", "RequestId")


@dataclass
class SimpleResponse:
    request_id: str = ""


@dataclass
class CreateLoadBalancerResponse:
    dns_name: str = ""
    request_id: str = ""


@dataclass
class DescribeLoadBalancersResponse:
    request_id: str = ""
    load_balancers: list[LoadBalancer] = field(default_factory=list)


@dataclass
class InstancesResponse:
    instances: list[Instance] = field(default_factory=list)
    request_id: str = ""


@dataclass
class LoadBalancerTags:
    load_balancer_name: str = ""
    tags: list[Tag] = field(default_factory=list)


@dataclass
class DescribeTagsResponse:
    load_balancer_tags: list[LoadBalancerTags] = field(default_factory=list)
    next_token: str = ""
    request_id: str = ""


@dataclass
class ConfigureHealthCheckResponse:
    check: HealthCheck = field(default_factory=HealthCheck)
    request_id: str = ""


@dataclass
class DescribeInstanceHealthResponse:
    instance_states: list[InstanceState] = field(default_factory=list)
    request_id: str = ""


# ---------------------------------------------------------------------------
# Client


def _members(prefix: str, values: Iterable[str], suffix: str = "") -> Iterator[tuple[str, str]]:
    for number, value in enumerate(values, start=1):
        yield f"{prefix}.member.{number}{suffix}", value


def _tag_params(tags: Iterable[Tag]) -> dict[str, str]:
    params: dict[str, str] = {}
    for number, tag in enumerate(tags, start=1):
        params[f"Tags.member.{number}.Key"] = tag.key
        params[f"Tags.member.{number}.Value"] = tag.value
    return params


def _bool(value: bool) -> str:
    return "true" if value else "false"


class ELB:
    """Operations against the load balancing endpoint of a region."""

    def __init__(self, auth: Auth, region: Region, session: requests.Session | None = None) -> None:
        self.auth = auth
        self.region = region
        self.session = session if session is not None else requests.Session()

    def _query(self, action: str, params: dict[str, str]) -> ET.Element:
        params = {"Action": action, **params}
        params["Version"] = API_VERSION
        params["Timestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        endpoint = urlsplit(self.region.elb_endpoint)
        sign_elb(self.auth, "GET", "/", params, endpoint.netloc)
        query = urlencode(sorted(params.items()))
        url = urlunsplit((endpoint.scheme, endpoint.netloc, endpoint.path, query, endpoint.fragment))

        response = self.session.get(url)
        if response.status_code > 200:
            raise self._build_error(response)
        return _parse(response.content)

    @staticmethod
    def _build_error(response: requests.Response) -> ELBError:
        code = message = ""
        try:
            root = _parse(response.content)
        except ET.ParseError:
            root = None
        if root is not None:
            errors = _find_all(root, "Error")
            if errors:
                code = _text(errors[0], "Code")
                message = _text(errors[0], "Message")
        if not message:
            message = f"{response.status_code} {response.reason or ''}".strip()
        return ELBError(response.status_code, code, message)

    def add_tags(self, load_balancer_names: Iterable[str], tags: Iterable[Tag]) -> SimpleResponse:
        params = dict(_members("LoadBalancerNames", load_balancer_names))
        params.update(_tag_params(tags))
        root = self._query("AddTags", params)
        return SimpleResponse(_request_id(root))

    def remove_tags(self, load_balancer_names: Iterable[str], tag_keys: Iterable[str]) -> SimpleResponse:
        params = dict(_members("LoadBalancerNames", load_balancer_names))
        params.update(_members("Tags", tag_keys, ".Key"))
        root = self._query("RemoveTags", params)
        return SimpleResponse(_request_id(root))

    def create_load_balancer(self, options: CreateLoadBalancer) -> CreateLoadBalancerResponse:
        params = {"LoadBalancerName": options.load_balancer_name}
        params.update(_members("AvailabilityZones", options.avail_zones))
        params.update(_members("SecurityGroups", options.security_groups))
        params.update(_members("Subnets", options.subnets))
        for number, listener in enumerate(options.listeners, start=1):
            prefix = f"Listeners.member.{number}"
            params[f"{prefix}.LoadBalancerPort"] = str(listener.load_balancer_port)
            params[f"{prefix}.InstancePort"] = str(listener.instance_port)
            params[f"{prefix}.Protocol"] = listener.protocol
            params[f"{prefix}.InstanceProtocol"] = listener.instance_protocol
            params[f"{prefix}.SSLCertificateId"] = listener.ssl_certificate_id
        params.update(_tag_params(options.tags))
        if options.internal:
            params["Scheme"] = "internal"
        root = self._query("CreateLoadBalancer", params)
        return CreateLoadBalancerResponse(
            dns_name=_text(root, "CreateLoadBalancerResult", "DNSName"),
            request_id=_request_id(root),
        )

    def delete_load_balancer(self, load_balancer_name: str) -> SimpleResponse:
        root = self._query("DeleteLoadBalancer", {"LoadBalancerName": load_balancer_name})
        return SimpleResponse(_request_id(root))

    def describe_load_balancers(self, names: Iterable[str] = ()) -> DescribeLoadBalancersResponse:
        root = self._query("DescribeLoadBalancers", dict(_members("LoadBalancerNames", names)))
        members = _find_all(root, "DescribeLoadBalancersResult", "LoadBalancerDescriptions", "member")
        return DescribeLoadBalancersResponse(
            request_id=_request_id(root),
            load_balancers=[LoadBalancer._from_xml(m) for m in members],
        )

    def modify_load_balancer_attributes(
        self, load_balancer_name: str, attributes: LoadBalancerAttributes
    ) -> SimpleResponse:
        prefix = "LoadBalancerAttributes"
        params = {
            "LoadBalancerName": load_balancer_name,
            f"{prefix}.CrossZoneLoadBalancing.Enabled": _bool(attributes.cross_zone_load_balancing_enabled),
        }
        if attributes.connection_settings_idle_timeout > 0:
            params[f"{prefix}.ConnectionSettings.IdleTimeout"] = str(attributes.connection_settings_idle_timeout)
        draining = attributes.connection_draining
        if draining.timeout > 0:
            params[f"{prefix}.ConnectionDraining.Timeout"] = str(draining.timeout)
        params[f"{prefix}.ConnectionDraining.Enabled"] = _bool(draining.enabled)
        log = attributes.access_log
        params[f"{prefix}.AccessLog.Enabled"] = _bool(log.enabled)
        if log.enabled:
            params[f"{prefix}.AccessLog.EmitInterval"] = str(log.emit_interval)
            params[f"{prefix}.AccessLog.S3BucketName"] = log.s3_bucket_name
            params[f"{prefix}.AccessLog.S3BucketPrefix"] = log.s3_bucket_prefix
        root = self._query("ModifyLoadBalancerAttributes", params)
        return SimpleResponse(_request_id(root))

    def _instances_call(self, action: str, load_balancer_name: str, instances: Iterable[str]) -> InstancesResponse:
        params = {"LoadBalancerName": load_balancer_name}
        params.update(_members("Instances", instances, ".InstanceId"))
        root = self._query(action, params)
        members = _find_all(root, f"{action}Result", "Instances", "member")
        return InstancesResponse(
            instances=[Instance._from_xml(m) for m in members],
            request_id=_request_id(root),
        )

    def register_instances(self, load_balancer_name: str, instances: Iterable[str]) -> InstancesResponse:
        return self._instances_call("RegisterInstancesWithLoadBalancer", load_balancer_name, instances)

    def deregister_instances(self, load_balancer_name: str, instances: Iterable[str]) -> InstancesResponse:
        return self._instances_call("DeregisterInstancesFromLoadBalancer", load_balancer_name, instances)

    def describe_tags(self, load_balancer_names: Iterable[str]) -> DescribeTagsResponse:
        root = self._query("DescribeTags", dict(_members("LoadBalancerNames", load_balancer_names)))
        descriptions = [
            LoadBalancerTags(
                load_balancer_name=_text(member, "LoadBalancerName"),
                tags=[Tag._from_xml(t) for t in _find_all(member, "Tags", "member")],
            )
            for member in _find_all(root, "DescribeTagsResult", "TagDescriptions", "member")
        ]
        return DescribeTagsResponse(
            load_balancer_tags=descriptions,
            next_token=_text(root, "DescribeTagsResult", "NextToken"),
            request_id=_request_id(root),
        )

    def configure_health_check(self, load_balancer_name: str, check: HealthCheck) -> ConfigureHealthCheckResponse:
        params = {
            "LoadBalancerName": load_balancer_name,
            "HealthCheck.HealthyThreshold": str(check.healthy_threshold),
            "HealthCheck.UnhealthyThreshold": str(check.unhealthy_threshold),
            "HealthCheck.Interval": str(check.interval),
            "HealthCheck.Target": check.target,
            "HealthCheck.Timeout": str(check.timeout),
        }
        root = self._query("ConfigureHealthCheck", params)
        checks = _find_all(root, "ConfigureHealthCheckResult", "HealthCheck")
        return ConfigureHealthCheckResponse(
            check=HealthCheck._from_xml(checks[0] if checks else None),
            request_id=_request_id(root),
        )

    def describe_instance_health(self, load_balancer_name: str) -> DescribeInstanceHealthResponse:
        root = self._query("DescribeInstanceHealth", {"LoadBalancerName": load_balancer_name})
        members = _find_all(root, "DescribeInstanceHealthResult", "InstanceStates", "member")
        return DescribeInstanceHealthResponse(
            instance_states=[InstanceState._from_xml(m) for m in members],
            request_id=_request_id(root),
        )