# awsquery

Small clients for AWS services that speak the "query" protocol, the
request-signing routines those services use, and an in-memory EC2 simulator
for use in tests.

## What is included

- `awsquery.signing` holds the `Auth` value type (`access_key`, `secret_key`
  and an optional `token`) and the `Region` value type (`name`,
  `ec2_endpoint`, `elb_endpoint`, `sdb_endpoint`, `sns_endpoint`). It also
  has the `encode` helper, which does RFC 3986 percent-encoding, and one
  signer per service: `sign_ec2`, `sign_elb`, `sign_sns`, `sign_sdb` and
  `sign_mturk`. Each signer writes the signature into the parameter mapping
  you pass in, under `Signature`, and also returns it.
- `awsquery.elb` holds the `ELB` client for Elastic Load Balancing. Its
  methods are:
  - `add_tags` and `remove_tags`
  - `create_load_balancer`, `delete_load_balancer` and `describe_load_balancers`
  - `modify_load_balancer_attributes`
  - `register_instances` and `deregister_instances`
  - `describe_tags`
  - `configure_health_check` and `describe_instance_health`

  Responses come back as dataclasses such as `DescribeLoadBalancersResponse`
  and `LoadBalancer`. A status above 200 raises `ELBError`, which carries
  `status_code`, `code` and `message`.
- `awsquery.mturk` holds the `MTurk` client, with `create_hit`,
  `create_hit_of_type` and `search_hits`. Questions are sent as
  `ExternalQuestion` and rewards as `Price`. Any status other than 200 raises
  `MTurkError`.
- `awsquery.ec2test` is a fake EC2 service:
  - `server.Server` keeps instances, reservations and security groups in
    memory and listens on a local port. Its address is in `Server.url`.
  - `model` holds the state types: `SecurityGroup`, `Reservation`,
    `Instance`, and the instance states `PENDING`, `RUNNING`,
    `SHUTTING_DOWN`, `TERMINATED` and `STOPPED`.
  - `filter.Filter` applies `Filter.N.Name` / `Filter.N.Value.M` filters.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Examples

Describing load balancers:

```python
from awsquery.signing import Auth, Region
from awsquery.elb import ELB

auth = Auth(access_key="access", secret_key="secret")
region = Region(elb_endpoint="https://elasticloadbalancing.us-east-1.amazonaws.com")

elb = ELB(auth, region)
resp = elb.describe_load_balancers(["my-load-balancer"])
for lb in resp.load_balancers:
    print(lb.load_balancer_name, lb.dns_name)
```

`ELB` and `MTurk` both accept an optional `requests.Session` through their
`session` argument.

Signing a parameter set by hand:

```python
from awsquery.signing import Auth, sign_ec2

params = {"Action": "DescribeInstances"}
sign_ec2(Auth(access_key="user", secret_key="secret"), "GET", "/", params, "ec2.amazonaws.com")
print(params["Signature"])
```

Using the EC2 simulator:

```python
from awsquery.ec2test.server import Server

with Server() as srv:
    status, body = srv.handle({"Action": "CreateSecurityGroup", "GroupName": "web"})
    status, body = srv.handle({"Action": "RunInstances", "MinCount": "1", "MaxCount": "2",
                               "ImageId": "ami-1", "SecurityGroup.1": "web"})
    for action in srv.actions:
        print(action.request_id, action.err)
```

`Server.handle` takes a mapping of form fields and returns the HTTP status
together with the XML body. The same requests can be sent over HTTP to
`srv.url`, as GET query strings or as POST form bodies. The simulator
supports these actions:

- `RunInstances`, `TerminateInstances` and `DescribeInstances`
- `CreateSecurityGroup`, `DescribeSecurityGroups` and `DeleteSecurityGroup`
- `AuthorizeSecurityGroupIngress` and `RevokeSecurityGroupIngress`

A bad request comes back as an error response, and the error is recorded on
its `Action` as an `EC2Error`. There are more calls for tests:
`Server.new_instances` starts instances directly, `Server.instance` looks one
up, and `Server.set_initial_instance_state` chooses the state that new
instances start in.

## What it does not do

- There are no clients for SimpleDB or SNS. Only their signers, `sign_sdb`
  and `sign_sns`, are provided.
- There is no EC2 client. `awsquery.ec2test` only simulates the service, for
  eight actions.
- Calls are not retried, and paged results are not followed.

## Tests

```
pytest
```