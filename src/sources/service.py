"""
Service translation - derives forwarding addresses from Kubernetes Services.

All functions operate on the Service JSON document as returned by the
Kubernetes API and never modify it.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from config import AnnotationConfig
from forwarding.address import Address, ScopeKey

logger = logging.getLogger(__name__)

LOAD_BALANCER = "LoadBalancer"
NODE_PORT = "NodePort"


def _metadata(service: Dict[str, Any]) -> Dict[str, Any]:
    return service.get("metadata") or {}


def _spec(service: Dict[str, Any]) -> Dict[str, Any]:
    return service.get("spec") or {}


def service_key(service: Dict[str, Any]) -> str:
    """Return ``namespace/name`` for log messages and bookkeeping."""
    meta = _metadata(service)
    return f"{meta.get('namespace', '')}/{meta.get('name', '')}"


def is_eligible(service: Dict[str, Any], annotations: AnnotationConfig) -> bool:
    """
    Check whether a Service should get port forwarding rules.

    The Service must be reachable from outside the cluster (a LoadBalancer,
    or a NodePort with external IPs) and be explicitly enabled with the
    ``<prefix>/enable: "true"`` annotation.
    """
    spec = _spec(service)
    service_type = spec.get("type")
    exposed = service_type == LOAD_BALANCER or (
        service_type == NODE_PORT and bool(spec.get("externalIPs"))
    )
    if not exposed:
        return False

    service_annotations = _metadata(service).get("annotations") or {}
    return service_annotations.get(annotations.enable_key) == "true"


def target_ip(service: Dict[str, Any]) -> str:
    spec = _spec(service)
    if spec.get("type") == LOAD_BALANCER:
        if spec.get("loadBalancerIP"):
            return spec["loadBalancerIP"]
        # loadBalancerIP is deprecated; fall back to the assigned ingress IP
        load_balancer = (service.get("status") or {}).get("loadBalancer") or {}
        for entry in load_balancer.get("ingress") or []:
            if entry.get("ip"):
                return entry["ip"]
        return ""

    external_ips = spec.get("externalIPs") or []
    return external_ips[0] if external_ips else ""


def source_range(service: Dict[str, Any]) -> str:
    spec = _spec(service)
    ranges = spec.get("loadBalancerSourceRanges") or []
    if spec.get("type") == LOAD_BALANCER and ranges:
        return ranges[0]
    return ""


def options_from_service(
    service: Dict[str, Any], annotations: AnnotationConfig
) -> ScopeKey:
    """
    Collect ``<prefix>/<key>`` annotations (except the enable flag) as options.

    ``<prefix>/site: home`` becomes the option ``site=home``.
    """
    key_prefix = f"{annotations.prefix}/"
    options = {}
    for key, value in (_metadata(service).get("annotations") or {}).items():
        if key.startswith(key_prefix) and key != annotations.enable_key:
            options[key[len(key_prefix) :]] = value
    return ScopeKey.from_mapping(options)


def addresses_from_service(
    service: Dict[str, Any], annotations: AnnotationConfig
) -> List[Address]:
    """Build one Address per Service port, named ``<namespace>-<name>``."""
    meta = _metadata(service)
    name = f"{meta.get('namespace', '')}-{meta.get('name', '')}"
    ip = target_ip(service)
    src = source_range(service)
    options = options_from_service(service, annotations)

    return [
        Address(
            name=name,
            port=int(port["port"]),
            ip=ip,
            source_range=src,
            options=options,
        )
        for port in _spec(service).get("ports") or []
    ]


def is_deleting(service: Dict[str, Any]) -> bool:
    return bool(_metadata(service).get("deletionTimestamp"))


def has_finalizer(service: Dict[str, Any], finalizer: str) -> bool:
    return finalizer in (_metadata(service).get("finalizers") or [])


def _annotations(service: Dict[str, Any]) -> Dict[str, str]:
    return _metadata(service).get("annotations") or {}


def encode_addresses(addresses: List[Address]) -> str:
    """Serialise addresses for the applied-addresses annotation."""
    return json.dumps(
        [
            {
                "name": a.name,
                "port": a.port,
                "ip": a.ip,
                "source_range": a.source_range,
                "options": a.options.as_dict(),
            }
            for a in addresses
        ],
        sort_keys=True,
        separators=(",", ":"),
    )


def recorded_value(service: Dict[str, Any], annotations: AnnotationConfig) -> Optional[str]:
    return _annotations(service).get(annotations.applied_key)


def recorded_addresses(
    service: Dict[str, Any], annotations: AnnotationConfig
) -> Optional[List[Address]]:
    """
    Addresses last applied for this Service, as stored in its annotation.

    Returns ``None`` when the annotation is missing or cannot be parsed.
    """
    raw = recorded_value(service, annotations)
    if raw is None:
        return None
    try:
        return [
            Address(
                name=entry["name"],
                port=entry["port"],
                ip=entry["ip"],
                source_range=entry.get("source_range", ""),
                options=ScopeKey.from_mapping(entry.get("options")),
            )
            for entry in json.loads(raw)
        ]
    except (TypeError, ValueError, KeyError) as e:
        logger.warning(
            f"Ignoring unreadable {annotations.applied_key} on "
            f"{service_key(service)}: {e}"
        )
        return None
