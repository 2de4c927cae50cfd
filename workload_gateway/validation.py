#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Offline validation of inbound workload documents

Nothing in here talks to the cluster. A document either leaves this module as a
ValidatedWorkload or raises one of the WorkloadValidationError subclasses below.
"""

import hashlib
import json
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import yaml

from workload_gateway.models import _VALIDATOR_SEAL, ValidatedWorkload, WorkloadRequest

RESERVED_ANNOTATION_PREFIX = "workload-gateway.io/"

SUPPORTED_KINDS: Mapping[str, str] = {"Pod": "v1"}

_DNS1123_LABEL = r"[a-z0-9](?:[-a-z0-9]*[a-z0-9])?"
_DNS1123_LABEL_RE = re.compile(_DNS1123_LABEL)
_DNS1123_SUBDOMAIN_RE = re.compile(rf"{_DNS1123_LABEL}(?:\.{_DNS1123_LABEL})*")

_IMAGE_REF_RE = re.compile(
    r"[a-z0-9]+(?:[._-][a-z0-9]+)*(?::[0-9]+)?"  # registry host or first path component
    r"(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*"  # remaining path components
    r"(?::\w[\w.-]{0,127})?"  # tag
    r"(?:@[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,})?"  # digest
)

_CONTAINER_LISTS = ("containers", "initContainers", "ephemeralContainers")


class WorkloadValidationError(Exception):
    ...


class ParseError(WorkloadValidationError):
    ...


class SchemaError(WorkloadValidationError):
    ...


class PolicyError(WorkloadValidationError):
    def __init__(self, denied: Sequence[str]) -> None:
        self.denied = tuple(denied)
        super().__init__(f"Requested capabilities are not allowed: {', '.join(self.denied)}")


HOST_FLAGS = frozenset(
    {"privileged", "allowPrivilegeEscalation", "hostNetwork", "hostPID", "hostIPC", "hostPath"}
)


def normalize_capability(name: str) -> str:
    """Linux capabilities are matched upper-cased and without the CAP_ prefix

    >>> normalize_capability("cap_net_admin")
    'NET_ADMIN'
    >>> normalize_capability("SYS_ADMIN")
    'SYS_ADMIN'
    >>> normalize_capability("hostNetwork")
    'hostNetwork'
    """
    return name if name in HOST_FLAGS else name.upper().removeprefix("CAP_")


@dataclass(frozen=True)
class AdmissionPolicy:
    denied_capabilities: frozenset[str]
    # used when neither the request nor the document names a namespace
    default_namespace: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "denied_capabilities",
            frozenset(normalize_capability(c) for c in self.denied_capabilities),
        )


def is_dns1123_label(value: str) -> bool:
    """
    >>> is_dns1123_label("default")
    True
    >>> is_dns1123_label("kube-system")
    True
    >>> is_dns1123_label("Default")
    False
    >>> is_dns1123_label("-leading")
    False
    >>> is_dns1123_label("a" * 64)
    False
    """
    return len(value) <= 63 and _DNS1123_LABEL_RE.fullmatch(value) is not None


def is_dns1123_subdomain(value: str) -> bool:
    """
    >>> is_dns1123_subdomain("web-1")
    True
    >>> is_dns1123_subdomain("web.frontend.v2")
    True
    >>> is_dns1123_subdomain("web_1")
    False
    >>> is_dns1123_subdomain("")
    False
    """
    return len(value) <= 253 and _DNS1123_SUBDOMAIN_RE.fullmatch(value) is not None


def is_image_reference(value: str) -> bool:
    """
    >>> is_image_reference("nginx:latest")
    True
    >>> is_image_reference("registry.example.com:5000/team/app:1.25")
    True
    >>> is_image_reference("busybox@sha256:" + "a" * 64)
    True
    >>> is_image_reference("nginx latest")
    False
    >>> is_image_reference("")
    False
    """
    return _IMAGE_REF_RE.fullmatch(value) is not None


def _reject_anchors(document: str) -> None:
    for event in yaml.parse(document, Loader=yaml.SafeLoader):
        if isinstance(event, yaml.NodeEvent) and event.anchor is not None:
            raise ParseError("Document must not use YAML anchors or aliases")


def _parse(document: str | bytes) -> Any:
    if isinstance(document, bytes):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Document is not valid UTF-8: {e}") from e
    try:
        _reject_anchors(document)
        return yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise ParseError(f"Document is not well-formed YAML or JSON: {e}") from e


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise SchemaError(f"{where} must be a mapping")
    return value


def _string_map(value: Any, where: str) -> Mapping[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise SchemaError(f"{where} must map strings to strings")
    return value


def _resolve_namespace(requested: str, declared: Any, default: str) -> str:
    if declared is not None and not isinstance(declared, str):
        raise SchemaError("metadata.namespace must be a string")
    if requested and declared and requested != declared:
        raise SchemaError(
            f"Namespace of the request ({requested}) does not match metadata.namespace ({declared})"
        )
    if not (namespace := requested or declared or default):
        raise SchemaError("Namespace must not be empty")
    if not is_dns1123_label(namespace):
        raise SchemaError(f"Invalid namespace: '{namespace}'")
    return namespace


def _containers(pod_spec: Mapping[str, Any]) -> Iterator[tuple[str, Mapping[str, Any]]]:
    for list_name in _CONTAINER_LISTS:
        entries = pod_spec.get(list_name)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise SchemaError(f"spec.{list_name} must be a list")
        for index, entry in enumerate(entries):
            yield list_name, _mapping(entry, f"spec.{list_name}[{index}]")


def _check_containers(pod_spec: Mapping[str, Any]) -> tuple[str, ...]:
    if not pod_spec.get("containers"):
        raise SchemaError("spec.containers must list at least one container")

    seen: set[str] = set()
    images = []
    for list_name, container in _containers(pod_spec):
        name = container.get("name")
        if not isinstance(name, str) or not is_dns1123_label(name):
            raise SchemaError(f"Invalid container name in spec.{list_name}: '{name}'")
        if name in seen:
            raise SchemaError(f"Duplicate container name: '{name}'")
        seen.add(name)

        image = container.get("image")
        if not isinstance(image, str) or not is_image_reference(image):
            raise SchemaError(f"Invalid image reference for container {name}: '{image}'")
        if list_name != "ephemeralContainers":
            images.append(image)
    return tuple(images)


def requested_capabilities(pod_spec: Mapping[str, Any]) -> set[str]:
    """Collect the host level capabilities a pod asks for

    >>> sorted(requested_capabilities({
    ...     "hostNetwork": True,
    ...     "containers": [{
    ...         "name": "c",
    ...         "securityContext": {"privileged": True, "capabilities": {"add": ["cap_net_admin"]}},
    ...     }],
    ... }))
    ['NET_ADMIN', 'hostNetwork', 'privileged']
    """
    requested = {
        flag for flag in ("hostNetwork", "hostPID", "hostIPC") if pod_spec.get(flag) is True
    }

    for index, volume in enumerate(pod_spec.get("volumes") or ()):
        if "hostPath" in _mapping(volume, f"spec.volumes[{index}]"):
            requested.add("hostPath")

    for _list_name, container in _containers(pod_spec):
        if not (security_context := container.get("securityContext")):
            continue
        security_context = _mapping(security_context, "securityContext")
        for flag in ("privileged", "allowPrivilegeEscalation"):
            if security_context.get(flag) is True:
                requested.add(flag)
        capabilities = _mapping(security_context.get("capabilities") or {}, "capabilities")
        if (added := capabilities.get("add")) is None:
            continue
        if not isinstance(added, list) or not all(isinstance(c, str) for c in added):
            raise SchemaError("securityContext.capabilities.add must be a list of strings")
        requested.update(normalize_capability(c) for c in added)

    return requested


def _canonical_json(document: Mapping[str, Any]) -> str:
    try:
        return json.dumps(document, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SchemaError(f"Document cannot be represented as JSON: {e}") from e


def validate(raw: WorkloadRequest, policy: AdmissionPolicy) -> ValidatedWorkload:
    document = _parse(raw.document)
    if document is None:
        raise SchemaError("Document is empty")
    document = dict(_mapping(document, "Document"))

    if not isinstance(kind := document.get("kind"), str) or kind not in SUPPORTED_KINDS:
        raise SchemaError(f"Unsupported kind: '{kind}'")
    if (api_version := document.get("apiVersion")) != SUPPORTED_KINDS[kind]:
        raise SchemaError(f"Unsupported apiVersion for {kind}: '{api_version}'")

    metadata = dict(_mapping(document.get("metadata"), "metadata"))
    name = metadata.get("name")
    if not isinstance(name, str) or not is_dns1123_subdomain(name):
        raise SchemaError(f"Invalid name: '{name}'")
    namespace = _resolve_namespace(
        raw.namespace,
        metadata.get("namespace"),
        policy.default_namespace,
    )
    _string_map(metadata.get("labels"), "metadata.labels")
    annotations = _string_map(metadata.get("annotations"), "metadata.annotations")
    if reserved := sorted(a for a in annotations if a.startswith(RESERVED_ANNOTATION_PREFIX)):
        raise SchemaError(f"Reserved annotations must not be set: {', '.join(reserved)}")

    pod_spec = _mapping(document.get("spec"), "spec")
    images = _check_containers(pod_spec)

    if denied := sorted(requested_capabilities(pod_spec) & policy.denied_capabilities):
        raise PolicyError(denied)

    metadata["namespace"] = namespace
    document["metadata"] = metadata
    manifest_json = _canonical_json(document)

    return ValidatedWorkload(
        kind=kind,
        name=name,
        namespace=namespace,
        images=images,
        manifest_json=manifest_json,
        content_digest=hashlib.sha256(manifest_json.encode()).hexdigest(),
        _seal=_VALIDATOR_SEAL,
    )
