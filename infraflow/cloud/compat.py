"""Compatibility backend: the legacy EC2/ELBv2-compatible API via boto3.

Resources are tagged with ``Name`` and the cluster label; name lookups go
through ``tag:Name`` filters.  SDK errors are mapped onto HTTP-like status
codes so the facade templates treat both backends the same way::

    *.NotFound, LoadBalancerNotFound           -> 404
    *.Duplicate, DuplicateLoadBalancerName     -> 409
    DependencyViolation, ResourceInUse         -> HTTP status (retryable)
    AuthFailure, InvalidClientTokenId, ...     -> 401
    UnauthorizedOperation, AccessDenied        -> 403
    *LimitExceeded, TooManyLoadBalancers       -> quota exceeded (fatal)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from infraflow.cloud.credentials import CompatCredentials
from infraflow.cloud.facade import (
    ANY_IPV4,
    EGRESS,
    INGRESS,
    InfraClient,
    Keypair,
    LoadBalancer,
    LoadBalancerSpec,
    Network,
    NetworkSpec,
    SecurityGroup,
    SecurityGroupRule,
    SecurityGroupSpec,
    Subnet,
    SubnetSpec,
)
from infraflow.cloud.labels import LabelSelector, from_tags, shorten_name, to_tags
from infraflow.errors import CloudAPIError, ErrorCode, StepTimeoutError
from infraflow.state.models import Backend

logger = logging.getLogger(__name__)

#: ELBv2 load balancer names are limited to 32 characters.
LB_NAME_LIMIT = 32

_AUTH_CODES = frozenset({
    "AuthFailure", "InvalidClientTokenId", "SignatureDoesNotMatch",
    "UnrecognizedClientException",
})
_FORBIDDEN_CODES = frozenset({"UnauthorizedOperation", "AccessDenied", "AccessDeniedException"})
_CONFLICT_CODES = frozenset({"DuplicateLoadBalancerName"})
_QUOTA_SUFFIXES = ("LimitExceeded",)
_QUOTA_CODES = frozenset({"TooManyLoadBalancers", "TooManyTags"})


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_code(exc: BaseException) -> str:
    """Extract the error code string from a botocore ClientError."""
    resp = getattr(exc, "response", None)
    if isinstance(resp, dict):
        return resp.get("Error", {}).get("Code", "")
    return ""


def status_for_code(code: str, fallback: int = 0) -> int:
    """Map an SDK error code to the HTTP-like status the facade expects."""
    if code.endswith(".NotFound") or code.endswith("NotFound"):
        return 404
    if code.endswith(".Duplicate") or code in _CONFLICT_CODES:
        return 409
    if code in _AUTH_CODES:
        return 401
    if code in _FORBIDDEN_CODES:
        return 403
    return fallback


def client_error(exc: ClientError, operation: str) -> CloudAPIError:
    code = _error_code(exc)
    http_status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    status = status_for_code(code, http_status or 0)
    message = exc.response.get("Error", {}).get("Message", "") or str(exc)
    codes = None
    if code in _QUOTA_CODES or code.endswith(_QUOTA_SUFFIXES):
        codes = (ErrorCode.INFRA_QUOTA_EXCEEDED,)
    elif code in ("DependencyViolation", "ResourceInUse"):
        codes = (ErrorCode.RETRYABLE_INFRA_DEPENDENCIES,)
    return CloudAPIError(
        f"{operation}: {code or 'error'}: {message}",
        status_code=status,
        code=code,
        operation=operation,
        codes=codes,
    )


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise botocore failures as flow errors."""
    try:
        yield
    except ClientError as exc:
        raise client_error(exc, operation) from exc
    except (ConnectTimeoutError, ReadTimeoutError) as exc:
        raise StepTimeoutError(f"{operation}: {exc}") from exc
    except BotoCoreError as exc:
        raise CloudAPIError(f"{operation}: {exc}", operation=operation) from exc


# ---------------------------------------------------------------------------
# CompatContext
# ---------------------------------------------------------------------------


@dataclass
class CompatContext:
    """Session factory for the compatibility endpoints.

    Attributes:
        region: Region name handed to boto3.
        endpoint: EC2 endpoint URL; empty means the SDK default.
        elb_endpoint: ELBv2 endpoint URL; empty means the SDK default.
    """

    region: str
    credentials: CompatCredentials = field(repr=False)
    endpoint: str = ""
    elb_endpoint: str = ""
    _session: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def build(
        cls,
        credentials: CompatCredentials,
        region: str,
        endpoint: str = "",
    ) -> "CompatContext":
        return cls(
            region=region,
            credentials=credentials,
            endpoint=credentials.endpoint or endpoint,
            elb_endpoint=credentials.elb_endpoint,
        )

    @property
    def session(self) -> boto3.Session:
        """Return the cached :class:`boto3.Session`."""
        if self._session is None:
            self._session = boto3.Session(
                aws_access_key_id=self.credentials.access_key_id,
                aws_secret_access_key=self.credentials.secret_access_key,
                region_name=self.region,
            )
        return self._session

    def client(self, service: str, *, timeout: float) -> Any:
        """Create a boto3 client for *service* bound to *timeout* seconds."""
        endpoint = self.elb_endpoint if service == "elbv2" else self.endpoint
        kwargs: Dict[str, Any] = {
            "config": Config(
                connect_timeout=min(timeout, 10.0),
                read_timeout=timeout,
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        }
        if endpoint:
            kwargs["endpoint_url"] = endpoint
        return self.session.client(service, **kwargs)


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def _name_filter(name: str) -> Dict[str, Any]:
    return {"Name": "tag:Name", "Values": [name]}


def _network(vpc: Dict[str, Any]) -> Network:
    tags = from_tags(vpc.get("Tags"))
    return Network(
        id=vpc["VpcId"],
        name=tags.pop("Name", ""),
        cidr=vpc.get("CidrBlock", ""),
        labels=tags,
    )


def _subnet(item: Dict[str, Any]) -> Subnet:
    return Subnet(
        id=item["SubnetId"],
        name=from_tags(item.get("Tags")).get("Name", ""),
        network_id=item.get("VpcId", ""),
        cidr=item.get("CidrBlock", ""),
    )


def _rules(perms: List[Dict[str, Any]], direction: str) -> List[SecurityGroupRule]:
    rules: List[SecurityGroupRule] = []
    for perm in perms:
        protocol = perm.get("IpProtocol", "-1")
        base = dict(
            direction=direction,
            protocol=None if protocol == "-1" else protocol,
            port_min=perm.get("FromPort"),
            port_max=perm.get("ToPort"),
        )
        for rng in perm.get("IpRanges", []):
            rules.append(SecurityGroupRule(
                ip_range=rng.get("CidrIp"), description=rng.get("Description", ""), **base,
            ))
        for pair in perm.get("UserIdGroupPairs", []):
            rules.append(SecurityGroupRule(
                remote_group_id=pair.get("GroupId"), description=pair.get("Description", ""), **base,
            ))
    return rules


def _security_group(item: Dict[str, Any]) -> SecurityGroup:
    return SecurityGroup(
        id=item["GroupId"],
        name=item.get("GroupName", ""),
        network_id=item.get("VpcId", ""),
        rules=(
            _rules(item.get("IpPermissions", []), INGRESS)
            + _rules(item.get("IpPermissionsEgress", []), EGRESS)
        ),
    )


def _permission(rule: SecurityGroupRule) -> Dict[str, Any]:
    perm: Dict[str, Any] = {"IpProtocol": rule.protocol or "-1"}
    if rule.port_min is not None:
        perm["FromPort"] = rule.port_min
        perm["ToPort"] = rule.port_max if rule.port_max is not None else rule.port_min
    if rule.remote_group_id:
        perm["UserIdGroupPairs"] = [
            {"GroupId": rule.remote_group_id, "Description": rule.description},
        ]
    else:
        perm["IpRanges"] = [
            {"CidrIp": rule.ip_range or ANY_IPV4, "Description": rule.description},
        ]
    return perm


def _load_balancer(item: Dict[str, Any], labels: Optional[Dict[str, str]] = None) -> LoadBalancer:
    return LoadBalancer(
        id=item["LoadBalancerArn"],
        name=item.get("LoadBalancerName", ""),
        status=item.get("State", {}).get("Code", ""),
        labels=dict(labels or {}),
    )


# ---------------------------------------------------------------------------
# CompatClient
# ---------------------------------------------------------------------------


class CompatClient(InfraClient):
    """:class:`InfraClient` over the EC2/ELBv2-compatible API."""

    backend = Backend.COMPATIBILITY

    def __init__(
        self,
        context: CompatContext,
        *,
        default_timeout: float = 90.0,
        ec2_client: Any = None,
        elb_client: Any = None,
    ) -> None:
        super().__init__(default_timeout)
        self.context = context
        self._ec2 = ec2_client
        self._elb = elb_client
        self._clients_timeout: Optional[float] = None

    @classmethod
    def from_credentials(
        cls,
        credentials: CompatCredentials,
        region: str,
        *,
        endpoint: str = "",
        default_timeout: float = 90.0,
    ) -> "CompatClient":
        return cls(CompatContext.build(credentials, region, endpoint), default_timeout=default_timeout)

    def _refresh_clients(self) -> None:
        # botocore binds timeouts at client creation
        if self._clients_timeout == self.timeout:
            return
        self._ec2 = self.context.client("ec2", timeout=self.timeout)
        self._elb = self.context.client("elbv2", timeout=self.timeout)
        self._clients_timeout = self.timeout

    @property
    def ec2(self) -> Any:
        if self._ec2 is None or self._clients_timeout is not None:
            self._refresh_clients()
        return self._ec2

    @property
    def elb(self) -> Any:
        if self._elb is None or self._clients_timeout is not None:
            self._refresh_clients()
        return self._elb

    # -- network --------------------------------------------------------------

    def get_network(self, network_id: str) -> Optional[Network]:
        try:
            with translate_errors("describe vpc"):
                resp = self.ec2.describe_vpcs(VpcIds=[network_id])
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise
        vpcs = resp.get("Vpcs", [])
        return _network(vpcs[0]) if vpcs else None

    def list_networks(self, name: str) -> List[Network]:
        with translate_errors("describe vpcs"):
            paginator = self.ec2.get_paginator("describe_vpcs")
            return [
                _network(v)
                for page in paginator.paginate(Filters=[_name_filter(name)])
                for v in page.get("Vpcs", [])
            ]

    def _create_network(self, spec: NetworkSpec) -> Network:
        with translate_errors("create vpc"):
            vpc = self.ec2.create_vpc(
                CidrBlock=spec.cidr,
                TagSpecifications=[{
                    "ResourceType": "vpc",
                    "Tags": to_tags(spec.labels, name=spec.name),
                }],
            )["Vpc"]
        if spec.nameservers:
            with translate_errors("create dhcp options"):
                options = self.ec2.create_dhcp_options(
                    DhcpConfigurations=[
                        {"Key": "domain-name-servers", "Values": list(spec.nameservers)},
                    ],
                    TagSpecifications=[{
                        "ResourceType": "dhcp-options",
                        "Tags": to_tags(spec.labels, name=spec.name),
                    }],
                )["DhcpOptions"]
                self.ec2.associate_dhcp_options(
                    DhcpOptionsId=options["DhcpOptionsId"], VpcId=vpc["VpcId"],
                )
        network = _network(vpc)
        network.name = network.name or spec.name
        network.nameservers = list(spec.nameservers)
        return network

    def _delete_network(self, network_id: str) -> None:
        with translate_errors("delete vpc"):
            self.ec2.delete_vpc(VpcId=network_id)

    # -- subnet ---------------------------------------------------------------

    def get_subnet(self, subnet_id: str) -> Optional[Subnet]:
        try:
            with translate_errors("describe subnet"):
                resp = self.ec2.describe_subnets(SubnetIds=[subnet_id])
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise
        subnets = resp.get("Subnets", [])
        return _subnet(subnets[0]) if subnets else None

    def list_subnets(self, network_id: str, name: Optional[str] = None) -> List[Subnet]:
        filters = [{"Name": "vpc-id", "Values": [network_id]}]
        if name is not None:
            filters.append(_name_filter(name))
        with translate_errors("describe subnets"):
            paginator = self.ec2.get_paginator("describe_subnets")
            return [
                _subnet(s)
                for page in paginator.paginate(Filters=filters)
                for s in page.get("Subnets", [])
            ]

    def _create_subnet(self, spec: SubnetSpec) -> Subnet:
        with translate_errors("create subnet"):
            item = self.ec2.create_subnet(
                VpcId=spec.network_id,
                CidrBlock=spec.cidr,
                TagSpecifications=[{
                    "ResourceType": "subnet",
                    "Tags": to_tags(spec.labels, name=spec.name),
                }],
            )["Subnet"]
        subnet = _subnet(item)
        subnet.name = subnet.name or spec.name
        return subnet

    def _delete_subnet(self, subnet_id: str) -> None:
        with translate_errors("delete subnet"):
            self.ec2.delete_subnet(SubnetId=subnet_id)

    # -- security group -------------------------------------------------------

    def get_security_group(self, group_id: str) -> Optional[SecurityGroup]:
        try:
            with translate_errors("describe security group"):
                resp = self.ec2.describe_security_groups(GroupIds=[group_id])
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise
        groups = resp.get("SecurityGroups", [])
        return _security_group(groups[0]) if groups else None

    def list_security_groups(self, name: str, network_id: str = "") -> List[SecurityGroup]:
        filters = [{"Name": "group-name", "Values": [name]}]
        if network_id:
            filters.append({"Name": "vpc-id", "Values": [network_id]})
        with translate_errors("describe security groups"):
            paginator = self.ec2.get_paginator("describe_security_groups")
            return [
                _security_group(g)
                for page in paginator.paginate(Filters=filters)
                for g in page.get("SecurityGroups", [])
            ]

    def _create_security_group(self, spec: SecurityGroupSpec) -> SecurityGroup:
        kwargs: Dict[str, Any] = {
            "GroupName": spec.name,
            "Description": spec.description or spec.name,
            "TagSpecifications": [{
                "ResourceType": "security-group",
                "Tags": to_tags(spec.labels, name=spec.name),
            }],
        }
        if spec.network_id:
            kwargs["VpcId"] = spec.network_id
        with translate_errors("create security group"):
            group_id = self.ec2.create_security_group(**kwargs)["GroupId"]
        group = self.get_security_group(group_id)
        if group is None:
            return SecurityGroup(id=group_id, name=spec.name, network_id=spec.network_id)
        return group

    def _create_security_group_rule(self, group: SecurityGroup, rule: SecurityGroupRule) -> None:
        perm = _permission(rule)
        if rule.direction == EGRESS:
            with translate_errors("authorize security group egress"):
                self.ec2.authorize_security_group_egress(GroupId=group.id, IpPermissions=[perm])
        else:
            with translate_errors("authorize security group ingress"):
                self.ec2.authorize_security_group_ingress(GroupId=group.id, IpPermissions=[perm])

    def _delete_security_group(self, group_id: str) -> None:
        with translate_errors("delete security group"):
            self.ec2.delete_security_group(GroupId=group_id)

    # -- keypair --------------------------------------------------------------

    def get_keypair(self, name: str) -> Optional[Keypair]:
        try:
            with translate_errors("describe key pair"):
                resp = self.ec2.describe_key_pairs(KeyNames=[name], IncludePublicKey=True)
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise
        pairs = resp.get("KeyPairs", [])
        if not pairs:
            return None
        return Keypair(
            name=pairs[0].get("KeyName", name),
            public_key=pairs[0].get("PublicKey", ""),
            fingerprint=pairs[0].get("KeyFingerprint", ""),
        )

    def _create_keypair(self, name: str, public_key: str, labels: Dict[str, str]) -> Keypair:
        with translate_errors("import key pair"):
            resp = self.ec2.import_key_pair(
                KeyName=name,
                PublicKeyMaterial=public_key.encode("utf-8"),
                TagSpecifications=[{"ResourceType": "key-pair", "Tags": to_tags(labels)}],
            )
        return Keypair(
            name=resp.get("KeyName", name),
            public_key=public_key,
            fingerprint=resp.get("KeyFingerprint", ""),
        )

    def _delete_keypair(self, name: str) -> None:
        with translate_errors("delete key pair"):
            self.ec2.delete_key_pair(KeyName=name)

    # -- load balancer --------------------------------------------------------

    def _labels_for(self, arns: List[str]) -> Dict[str, Dict[str, str]]:
        labels: Dict[str, Dict[str, str]] = {}
        # DescribeTags accepts at most 20 ARNs per call
        for i in range(0, len(arns), 20):
            with translate_errors("describe load balancer tags"):
                resp = self.elb.describe_tags(ResourceArns=arns[i:i + 20])
            for desc in resp.get("TagDescriptions", []):
                labels[desc["ResourceArn"]] = from_tags(desc.get("Tags"))
        return labels

    def get_load_balancer(self, lb_id: str) -> Optional[LoadBalancer]:
        try:
            with translate_errors("describe load balancer"):
                resp = self.elb.describe_load_balancers(LoadBalancerArns=[lb_id])
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise
        items = resp.get("LoadBalancers", [])
        return _load_balancer(items[0]) if items else None

    def list_load_balancers(
        self,
        name: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
    ) -> List[LoadBalancer]:
        try:
            with translate_errors("describe load balancers"):
                paginator = self.elb.get_paginator("describe_load_balancers")
                kwargs = {"Names": [shorten_name(name, LB_NAME_LIMIT)]} if name else {}
                items = [
                    lb
                    for page in paginator.paginate(**kwargs)
                    for lb in page.get("LoadBalancers", [])
                ]
        except CloudAPIError as exc:
            if exc.not_found:
                return []
            raise
        if not selector:
            return [_load_balancer(i) for i in items]
        labels = self._labels_for([i["LoadBalancerArn"] for i in items])
        return [
            _load_balancer(i, labels.get(i["LoadBalancerArn"]))
            for i in items
            if selector.matches(labels.get(i["LoadBalancerArn"]))
        ]

    def _create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer:
        kwargs: Dict[str, Any] = {
            "Name": shorten_name(spec.name, LB_NAME_LIMIT),
            "Subnets": [spec.subnet_id],
            "Scheme": "internal",
            "Type": "network",
            "Tags": to_tags(spec.labels, name=spec.name),
        }
        if spec.security_group_id:
            kwargs["SecurityGroups"] = [spec.security_group_id]
        with translate_errors("create load balancer"):
            item = self.elb.create_load_balancer(**kwargs)["LoadBalancers"][0]
        return _load_balancer(item, spec.labels)

    def _delete_load_balancer(self, lb_id: str) -> None:
        with translate_errors("delete load balancer"):
            self.elb.delete_load_balancer(LoadBalancerArn=lb_id)
