import base64
import re
import xml.etree.ElementTree as ET

import pytest
import requests

from awsquery.ec2test.model import (
    PENDING,
    RUNNING,
    SHUTTING_DOWN,
    EC2Error,
    UserSecurityGroup,
)
from awsquery.ec2test.server import Server


@pytest.fixture
def server():
    srv = Server()
    yield srv
    srv.quit()


def call(server, **form):
    status, body = server.handle(form)
    return status, ET.fromstring(body)


def error_code(root):
    return root.findtext("Errors/Error/Code")


def run(server, count=1, **extra):
    form = {"MinCount": "1", "MaxCount": str(count), "ImageId": "ami-a", "InstanceType": "m1.small"}
    form.update(extra)
    status, root = call(server, Action="RunInstances", **form)
    assert status == 200
    return [e.text for e in root.findall("instancesSet/item/instanceId")]


def test_unknown_action_is_recorded_as_error(server):
    status, root = call(server, Action="Nope")
    assert status == 400
    assert error_code(root) == "InvalidParameterValue"
    assert root.findtext("Errors/Error/Message") == "Unrecognized Action"
    action = server.actions[-1]
    assert root.findtext("RequestId") == action.request_id
    assert action.err.code == "InvalidParameterValue"
    assert action.response is None


def test_run_instances_response(server):
    status, root = call(
        server, Action="RunInstances", MinCount="1", MaxCount="2", ImageId="ami-a", InstanceType="m1.small"
    )
    assert status == 200
    assert root.findtext("ownerId") == "9876"
    assert re.fullmatch(r"r-[0-9]+", root.findtext("reservationId"))
    ids = [e.text for e in root.findall("instancesSet/item/instanceId")]
    assert len(ids) == 2
    for inst_id in ids:
        inst = server.instance(inst_id)
        assert inst.image_id == "ami-a"
        assert inst.inst_type == "m1.small"
        assert inst.state == PENDING
    dns = root.findtext("instancesSet/item/dnsName")
    assert dns == f"{ids[0]}.example.com"
    assert server.actions[-1].response.tag == "RunInstancesResponse"


def test_user_data_round_trip(server):
    [inst_id] = run(server, UserData=base64.b64encode(b"hello world").decode())
    assert server.instance(inst_id).user_data == b"hello world"


@pytest.mark.parametrize(
    "form, code",
    [
        ({"MinCount": "2", "MaxCount": "1"}, "InvalidParameterCombination"),
        ({"MinCount": "0", "MaxCount": "0"}, "InvalidParameterValue"),
        ({"MinCount": "x", "MaxCount": "1"}, "InvalidParameterValue"),
        ({"MaxCount": "1"}, "InvalidParameterValue"),
        ({"MinCount": "1", "MaxCount": "1", "UserData": "!!!"}, "InvalidParameterValue"),
    ],
)
def test_run_instances_bad_parameters(server, form, code):
    status, root = call(server, Action="RunInstances", **form)
    assert status == 400
    assert error_code(root) == code


def test_run_with_unknown_group_creates_nothing(server):
    status, root = call(server, Action="RunInstances", MinCount="1", MaxCount="1", **{"SecurityGroup.1": "nope"})
    assert status == 400
    assert error_code(root) == "InvalidGroup.NotFound"
    _, described = call(server, Action="DescribeInstances")
    assert described.findall("reservationSet/item") == []


def test_run_with_group_by_name(server):
    [inst_id] = run(server, **{"SecurityGroup.1": "default"})
    _, root = call(server, Action="DescribeInstances")
    assert root.findtext("reservationSet/item/groupSet/item/groupName") == "default"
    assert root.findtext("reservationSet/item/instancesSet/item/instanceId") == inst_id


def test_initial_instance_state(server):
    server.set_initial_instance_state(RUNNING)
    [inst_id] = run(server)
    assert server.instance(inst_id).state == RUNNING


def test_terminate_instances(server):
    [inst_id] = run(server)
    status, root = call(server, Action="TerminateInstances", **{"InstanceId.1": inst_id})
    assert status == 200
    assert root.findtext("instancesSet/item/instanceId") == inst_id
    assert root.findtext("instancesSet/item/previousState/name") == PENDING.name
    assert root.findtext("instancesSet/item/currentState/name") == SHUTTING_DOWN.name
    assert server.instance(inst_id).state == SHUTTING_DOWN


def test_terminate_unknown_instance(server):
    status, root = call(server, Action="TerminateInstances", **{"InstanceId.1": "i-missing"})
    assert status == 400
    assert error_code(root) == "InvalidInstanceID.NotFound"


def test_describe_instances_filter(server):
    [first] = run(server)
    server.set_initial_instance_state(RUNNING)
    [second] = run(server)
    _, root = call(
        server,
        Action="DescribeInstances",
        **{"Filter.1.Name": "instance-state-name", "Filter.1.Value.1": RUNNING.name},
    )
    ids = [e.text for e in root.iter("instanceId")]
    assert ids == [second]
    assert first not in ids


def test_describe_instances_by_id(server):
    first, second = run(server, count=2)
    _, root = call(server, Action="DescribeInstances", **{"InstanceId.1": second})
    assert [e.text for e in root.iter("instanceId")] == [second]


def test_describe_instances_bad_filter(server):
    run(server)
    status, root = call(
        server, Action="DescribeInstances", **{"Filter.1.Name": "colour", "Filter.1.Value.1": "red"}
    )
    assert status == 400
    assert error_code(root) == "InvalidParameterValue"


def test_create_security_group(server):
    status, root = call(server, Action="CreateSecurityGroup", GroupName="web", GroupDescription="web tier")
    assert status == 200
    assert root.tag == "CreateSecurityGroupResponse"
    assert root.findtext("return") == "true"
    group_id = root.findtext("groupId")
    _, described = call(server, Action="DescribeSecurityGroups", **{"GroupId.1": group_id})
    assert described.findtext("securityGroupInfo/item/groupName") == "web"
    assert described.findtext("securityGroupInfo/item/groupDescription") == "web tier"


def test_create_security_group_errors(server):
    status, root = call(server, Action="CreateSecurityGroup", GroupName="default")
    assert status == 400
    assert error_code(root) == "InvalidGroup.Duplicate"
    status, root = call(server, Action="CreateSecurityGroup")
    assert error_code(root) == "InvalidParameterValue"


def test_default_group_permissions(server):
    _, root = call(server, Action="DescribeSecurityGroups")
    item = root.find("securityGroupInfo/item")
    assert item.findtext("groupName") == "default"
    assert item.findtext("groupDescription") == "default group"
    protocols = sorted(p.findtext("ipProtocol") for p in item.findall("ipPermissions/item"))
    assert protocols == ["icmp", "tcp", "udp"]
    for perm in item.findall("ipPermissions/item"):
        assert perm.findtext("groups/item/groupName") == "default"


def test_describe_unknown_group(server):
    status, root = call(server, Action="DescribeSecurityGroups", **{"GroupName.1": "nope"})
    assert status == 400
    assert error_code(root) == "InvalidGroup.NotFound"


PERM = {
    "IpPermissions.1.IpProtocol": "tcp",
    "IpPermissions.1.FromPort": "80",
    "IpPermissions.1.ToPort": "80",
    "IpPermissions.1.IpRanges.1.CidrIp": "10.0.0.0/8",
}


def cidrs(server, name):
    _, root = call(server, Action="DescribeSecurityGroups", **{"GroupName.1": name})
    return [e.text for e in root.iter("cidrIp")]


def test_authorize_and_revoke(server):
    call(server, Action="CreateSecurityGroup", GroupName="web")
    status, root = call(server, Action="AuthorizeSecurityGroupIngress", GroupName="web", **PERM)
    assert status == 200
    assert root.tag == "AuthorizeSecurityGroupIngressResponse"
    assert cidrs(server, "web") == ["10.0.0.0/8"]

    status, root = call(server, Action="AuthorizeSecurityGroupIngress", GroupName="web", **PERM)
    assert error_code(root) == "InvalidPermission.Duplicate"

    status, _ = call(server, Action="RevokeSecurityGroupIngress", GroupName="web", **PERM)
    assert status == 200
    assert cidrs(server, "web") == []


def test_authorize_source_group(server):
    call(server, Action="CreateSecurityGroup", GroupName="web")
    form = {
        "IpPermissions.1.IpProtocol": "tcp",
        "IpPermissions.1.FromPort": "22",
        "IpPermissions.1.ToPort": "22",
        "IpPermissions.1.Groups.1.GroupName": "default",
    }
    status, _ = call(server, Action="AuthorizeSecurityGroupIngress", GroupName="web", **form)
    assert status == 200
    _, root = call(
        server,
        Action="DescribeSecurityGroups",
        **{"Filter.1.Name": "ip-permission.group-name", "Filter.1.Value.1": "default"},
    )
    names = sorted(e.text for e in root.findall("securityGroupInfo/item/groupName"))
    assert names == ["default", "web"]


@pytest.mark.parametrize(
    "extra, code",
    [
        ({"IpPermissions.1.IpRanges.1.CidrIp": "bad"}, "InvalidPermission.Malformed"),
        ({"IpPermissions.1.FromPort": "90"}, "InvalidParameterValue"),
        ({"IpPermissions.1.Groups.1.GroupId": "nope"}, "InvalidGroupId.Malformed"),
        ({"IpPermissions.1.Groups.1.UserId": "abc"}, "InvalidUserID.Malformed"),
        ({"IpPermissions.1.Groups.1.GroupName": "nope"}, "InvalidGroup.NotFound"),
        ({"IpPermissions.1.Whatever": "x"}, "UnknownParameter"),
        ({"IpPermissions.1.IpProtocol": "sctp"}, "InvalidParameterValue"),
    ],
)
def test_authorize_errors(server, extra, code):
    form = dict(PERM)
    form.update(extra)
    status, root = call(server, Action="AuthorizeSecurityGroupIngress", GroupName="default", **form)
    assert status == 400
    assert error_code(root) == code


def test_authorize_unknown_group(server):
    status, root = call(server, Action="AuthorizeSecurityGroupIngress", GroupName="nope", **PERM)
    assert error_code(root) == "InvalidGroup.NotFound"


def test_delete_group_in_use_by_instance(server):
    _, created = call(server, Action="CreateSecurityGroup", GroupName="web")
    group_id = created.findtext("groupId")
    [inst_id] = run(server, **{"SecurityGroupId.1": group_id})
    status, root = call(server, Action="DeleteSecurityGroup", GroupId=group_id)
    assert status == 500
    assert error_code(root) == "InvalidGroup.InUse"

    call(server, Action="TerminateInstances", **{"InstanceId.1": inst_id})
    status, root = call(server, Action="DeleteSecurityGroup", GroupId=group_id)
    assert status == 200
    assert root.tag == "DeleteSecurityGroupResponse"
    status, root = call(server, Action="DescribeSecurityGroups", **{"GroupId.1": group_id})
    assert error_code(root) == "InvalidGroup.NotFound"


def test_delete_group_referenced_by_other_group(server):
    call(server, Action="CreateSecurityGroup", GroupName="web")
    call(server, Action="CreateSecurityGroup", GroupName="db")
    form = {
        "IpPermissions.1.IpProtocol": "tcp",
        "IpPermissions.1.FromPort": "5432",
        "IpPermissions.1.ToPort": "5432",
        "IpPermissions.1.Groups.1.GroupName": "web",
    }
    call(server, Action="AuthorizeSecurityGroupIngress", GroupName="db", **form)
    status, root = call(server, Action="DeleteSecurityGroup", GroupName="web")
    assert status == 500
    assert error_code(root) == "InvalidGroup.InUse"


def test_new_instances(server):
    ids = server.new_instances(3, "m1.large", "ami-b", RUNNING, [UserSecurityGroup(name="default")])
    assert len(ids) == 3
    assert all(server.instance(i).state == RUNNING for i in ids)
    _, root = call(
        server,
        Action="DescribeInstances",
        **{"Filter.1.Name": "group-name", "Filter.1.Value.1": "default"},
    )
    assert sorted(e.text for e in root.iter("instanceId")) == sorted(ids)


def test_new_instances_unknown_group(server):
    with pytest.raises(EC2Error) as info:
        server.new_instances(1, "m1.small", "ami-a", RUNNING, [UserSecurityGroup(name="nope")])
    assert info.value.code == "InvalidGroup.NotFound"


def test_instance_missing(server):
    assert server.instance("i-missing") is None


def test_request_ids_are_unique(server):
    call(server, Action="DescribeInstances")
    call(server, Action="DescribeInstances")
    ids = [a.request_id for a in server.actions]
    assert len(set(ids)) == 2
    assert all(re.fullmatch(r"req[0-9]+", i) for i in ids)


def test_over_http(server):
    response = requests.get(server.url, params={"Action": "CreateSecurityGroup", "GroupName": "web"}, timeout=5)
    assert response.status_code == 200
    root = ET.fromstring(response.content)
    assert root.findtext("groupId") == server.actions[-1].response.findtext("groupId")
    assert server.actions[-1].request["GroupName"] == ["web"]

    response = requests.get(server.url, params={"Action": "Nope"}, timeout=5)
    assert response.status_code == 400
    assert ET.fromstring(response.content).findtext("Errors/Error/Code") == "InvalidParameterValue"