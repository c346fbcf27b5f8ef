"""Native backend: the provider's own REST API.

All resources live under a project/region scope::

    {endpoint}/v1/projects/{project_id}/regions/{region}/networks
                                                         /subnets
                                                         /security-groups[/{id}/rules]
                                                         /keypairs[/{name}]
                                                         /load-balancers[/{name}]

Requests carry a bearer token and honour the timeout set through
:meth:`InfraClient.call_timeout`.  HTTP errors become :class:`CloudAPIError`
with the response status; request timeouts become :class:`StepTimeoutError`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from infraflow import __version__
from infraflow.cloud.credentials import NativeCredentials
from infraflow.cloud.facade import (
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
from infraflow.cloud.labels import LabelSelector
from infraflow.errors import CloudAPIError, StepTimeoutError
from infraflow.state.models import Backend

logger = logging.getLogger(__name__)

DEFAULT_NATIVE_ENDPOINT = "https://iaas.api.eu01.example.cloud"


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip()[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]


def _error_code(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("code") or "")
    return ""


def _items(body: Any, key: str = "items") -> List[Dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    return list(body.get(key) or [])


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def _network(item: Dict[str, Any]) -> Network:
    ipv4 = item.get("ipv4") or {}
    prefixes = ipv4.get("prefixes") or []
    return Network(
        id=item.get("id", ""),
        name=item.get("name", ""),
        cidr=prefixes[0] if prefixes else "",
        nameservers=list(ipv4.get("nameservers") or []),
        egress_ip=ipv4.get("publicIp") or "",
        labels=dict(item.get("labels") or {}),
    )


def _subnet(item: Dict[str, Any]) -> Subnet:
    return Subnet(
        id=item.get("id", ""),
        name=item.get("name", ""),
        network_id=item.get("networkId", ""),
        cidr=item.get("prefix", ""),
    )


def _rule(item: Dict[str, Any]) -> SecurityGroupRule:
    ports = item.get("portRange") or {}
    return SecurityGroupRule(
        direction=item.get("direction", INGRESS),
        ethertype=item.get("ethertype") or "IPv4",
        protocol=item.get("protocol") or None,
        port_min=ports.get("min"),
        port_max=ports.get("max"),
        ip_range=item.get("ipRange") or None,
        remote_group_id=item.get("remoteSecurityGroupId") or None,
        description=item.get("description", ""),
    )


def _rule_body(rule: SecurityGroupRule) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "direction": rule.direction,
        "ethertype": rule.ethertype,
        "description": rule.description,
    }
    if rule.protocol:
        body["protocol"] = rule.protocol
    if rule.port_min is not None:
        body["portRange"] = {"min": rule.port_min, "max": rule.port_max or rule.port_min}
    if rule.ip_range:
        body["ipRange"] = rule.ip_range
    if rule.remote_group_id:
        body["remoteSecurityGroupId"] = rule.remote_group_id
    return body


def _security_group(item: Dict[str, Any]) -> SecurityGroup:
    return SecurityGroup(
        id=item.get("id", ""),
        name=item.get("name", ""),
        network_id=item.get("networkId", ""),
        rules=[_rule(r) for r in item.get("rules") or []],
    )


def _load_balancer(item: Dict[str, Any]) -> LoadBalancer:
    return LoadBalancer(
        id=item.get("name", ""),
        name=item.get("name", ""),
        status=item.get("status", ""),
        labels=dict(item.get("labels") or {}),
    )


# ---------------------------------------------------------------------------
# NativeClient
# ---------------------------------------------------------------------------


class NativeClient(InfraClient):
    """:class:`InfraClient` over the native REST API."""

    backend = Backend.NATIVE

    def __init__(
        self,
        credentials: NativeCredentials,
        region: str,
        *,
        endpoint: str = "",
        default_timeout: float = 90.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(default_timeout)
        base = (endpoint or credentials.endpoint or DEFAULT_NATIVE_ENDPOINT).rstrip("/")
        self.base_url = f"{base}/v1/projects/{credentials.project_id}/regions/{region}"
        self.region = region
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {credentials.token}",
            "Content-Type": "application/json",
            "User-Agent": f"infraflow/{__version__}",
        })

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = self.base_url + path
        timeout = self.timeout
        logger.debug("%s %s (timeout %.1fs)", method, url, timeout)
        try:
            resp = self._session.request(method, url, json=json, params=params, timeout=timeout)
        except requests.exceptions.Timeout as exc:
            raise StepTimeoutError(f"{operation}: timed out after {timeout:.0f}s") from exc
        except requests.exceptions.RequestException as exc:
            raise CloudAPIError(f"{operation}: {exc}", operation=operation) from exc

        if resp.status_code >= 400:
            raise CloudAPIError(
                f"{operation}: status code {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
                code=_error_code(resp),
                operation=operation,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _get_or_none(self, path: str, *, operation: str) -> Any:
        try:
            return self._request("GET", path, operation=operation)
        except CloudAPIError as exc:
            if exc.not_found:
                return None
            raise

    # -- network --------------------------------------------------------------

    def get_network(self, network_id: str) -> Optional[Network]:
        body = self._get_or_none(f"/networks/{network_id}", operation="get network")
        return _network(body) if body else None

    def list_networks(self, name: str) -> List[Network]:
        body = self._request("GET", "/networks", operation="list networks")
        return [_network(i) for i in _items(body) if i.get("name") == name]

    def _create_network(self, spec: NetworkSpec) -> Network:
        ipv4: Dict[str, Any] = {"prefix": spec.cidr}
        if spec.nameservers:
            ipv4["nameservers"] = list(spec.nameservers)
        body = self._request(
            "POST", "/networks", operation="create network",
            json={"name": spec.name, "labels": spec.labels, "dhcp": True, "ipv4": ipv4},
        )
        return _network(body)

    def _delete_network(self, network_id: str) -> None:
        self._request("DELETE", f"/networks/{network_id}", operation="delete network")

    # -- subnet ---------------------------------------------------------------

    def get_subnet(self, subnet_id: str) -> Optional[Subnet]:
        body = self._get_or_none(f"/subnets/{subnet_id}", operation="get subnet")
        return _subnet(body) if body else None

    def list_subnets(self, network_id: str, name: Optional[str] = None) -> List[Subnet]:
        body = self._request(
            "GET", "/subnets", operation="list subnets", params={"networkId": network_id},
        )
        subnets = [_subnet(i) for i in _items(body)]
        return [s for s in subnets if name is None or s.name == name]

    def _create_subnet(self, spec: SubnetSpec) -> Subnet:
        payload: Dict[str, Any] = {
            "name": spec.name,
            "networkId": spec.network_id,
            "prefix": spec.cidr,
            "labels": spec.labels,
        }
        if spec.nameservers:
            payload["nameservers"] = list(spec.nameservers)
        body = self._request("POST", "/subnets", operation="create subnet", json=payload)
        return _subnet(body)

    def _delete_subnet(self, subnet_id: str) -> None:
        self._request("DELETE", f"/subnets/{subnet_id}", operation="delete subnet")

    # -- security group -------------------------------------------------------

    def get_security_group(self, group_id: str) -> Optional[SecurityGroup]:
        body = self._get_or_none(f"/security-groups/{group_id}", operation="get security group")
        return _security_group(body) if body else None

    def list_security_groups(self, name: str, network_id: str = "") -> List[SecurityGroup]:
        body = self._request("GET", "/security-groups", operation="list security groups")
        groups = [_security_group(i) for i in _items(body) if i.get("name") == name]
        if network_id:
            groups = [g for g in groups if not g.network_id or g.network_id == network_id]
        return groups

    def _create_security_group(self, spec: SecurityGroupSpec) -> SecurityGroup:
        payload: Dict[str, Any] = {
            "name": spec.name,
            "description": spec.description,
            "labels": spec.labels,
            "stateful": True,
        }
        if spec.network_id:
            payload["networkId"] = spec.network_id
        body = self._request("POST", "/security-groups", operation="create security group", json=payload)
        return _security_group(body)

    def _create_security_group_rule(self, group: SecurityGroup, rule: SecurityGroupRule) -> None:
        self._request(
            "POST", f"/security-groups/{group.id}/rules",
            operation="create security group rule", json=_rule_body(rule),
        )

    def _delete_security_group(self, group_id: str) -> None:
        self._request("DELETE", f"/security-groups/{group_id}", operation="delete security group")

    # -- keypair --------------------------------------------------------------

    def get_keypair(self, name: str) -> Optional[Keypair]:
        body = self._get_or_none(f"/keypairs/{name}", operation="get keypair")
        if not body:
            return None
        return Keypair(
            name=body.get("name", name),
            public_key=body.get("publicKey", ""),
            fingerprint=body.get("fingerprint", ""),
        )

    def _create_keypair(self, name: str, public_key: str, labels: Dict[str, str]) -> Keypair:
        body = self._request(
            "POST", "/keypairs", operation="create keypair",
            json={"name": name, "publicKey": public_key, "labels": labels},
        ) or {}
        return Keypair(
            name=body.get("name", name),
            public_key=body.get("publicKey", public_key),
            fingerprint=body.get("fingerprint", ""),
        )

    def _delete_keypair(self, name: str) -> None:
        self._request("DELETE", f"/keypairs/{name}", operation="delete keypair")

    # -- load balancer --------------------------------------------------------

    def get_load_balancer(self, lb_id: str) -> Optional[LoadBalancer]:
        body = self._get_or_none(f"/load-balancers/{lb_id}", operation="get load balancer")
        return _load_balancer(body) if body else None

    def list_load_balancers(
        self,
        name: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
    ) -> List[LoadBalancer]:
        body = self._request("GET", "/load-balancers", operation="list load balancers")
        lbs = [_load_balancer(i) for i in _items(body, "loadBalancers")]
        if name is not None:
            lbs = [lb for lb in lbs if lb.name == name]
        if selector:
            lbs = [lb for lb in lbs if selector.matches(lb.labels)]
        return lbs

    def _create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer:
        payload: Dict[str, Any] = {
            "name": spec.name,
            "labels": spec.labels,
            "networks": [{
                "networkId": spec.network_id,
                "subnetId": spec.subnet_id,
                "role": "ROLE_LISTENERS_AND_TARGETS",
            }],
            "options": {"privateNetworkOnly": True},
        }
        if spec.security_group_id:
            payload["securityGroupId"] = spec.security_group_id
        body = self._request("POST", "/load-balancers", operation="create load balancer", json=payload)
        return _load_balancer(body)

    def _delete_load_balancer(self, lb_id: str) -> None:
        self._request("DELETE", f"/load-balancers/{lb_id}", operation="delete load balancer")

