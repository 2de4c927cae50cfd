#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import copy
import uuid
from collections.abc import Callable, Iterator, Mapping
from typing import Any

import pytest

from workload_gateway.cluster import AlreadyExistsError, RemoteError
from workload_gateway.forwarder import Forwarder, RetryPolicy
from workload_gateway.gateway import Gateway
from workload_gateway.log import logger
from workload_gateway.models import ObjectIdentity, RemoteObject
from workload_gateway.validation import AdmissionPolicy

POD_YAML = """\
apiVersion: v1
kind: Pod
metadata:
  name: web-1
  namespace: default
spec:
  containers:
    - name: web
      image: nginx:latest
"""


class FakeClusterClient:
    """In-memory control plane with atomic create-if-absent semantics

    Errors queued in create_failures are raised by the next create calls, one
    per call, before the store is touched.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.create_calls = 0
        self.read_calls = 0
        self.timeouts: list[float] = []
        self.create_failures: list[RemoteError] = []
        self.read_failures: list[RemoteError] = []

    def create_object(
        self,
        namespace: str,
        manifest: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ObjectIdentity:
        self.create_calls += 1
        self.timeouts.append(timeout)
        if self.create_failures:
            raise self.create_failures.pop(0)
        key = (manifest["kind"], namespace, manifest["metadata"]["name"])
        if key in self.objects:
            raise AlreadyExistsError(f"{key} already exists")
        stored = copy.deepcopy(dict(manifest))
        stored["metadata"]["uid"] = str(uuid.uuid4())
        self.objects[key] = stored
        return self._identity(key)

    def read_object(
        self,
        namespace: str,
        kind: str,
        name: str,
        *,
        timeout: float,
    ) -> RemoteObject:
        self.read_calls += 1
        if self.read_failures:
            raise self.read_failures.pop(0)
        key = (kind, namespace, name)
        return RemoteObject(
            identity=self._identity(key),
            annotations=dict(self.objects[key]["metadata"].get("annotations", {})),
        )

    def _identity(self, key: tuple[str, str, str]) -> ObjectIdentity:
        kind, namespace, name = key
        return ObjectIdentity(kind, namespace, name, uid=self.objects[key]["metadata"]["uid"])


@pytest.fixture(name="cluster")
def fixture_cluster() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture(name="sleeps")
def fixture_sleeps() -> list[float]:
    return []


@pytest.fixture(name="retry_policy")
def fixture_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        attempts=3, timeout=10.0, backoff_base=0.2, backoff_max=5.0, backoff_jitter=0.2
    )


@pytest.fixture(name="policy")
def fixture_policy() -> AdmissionPolicy:
    return AdmissionPolicy(
        denied_capabilities=frozenset({"privileged", "hostNetwork", "hostPath", "SYS_ADMIN"}),
    )


@pytest.fixture(name="forwarder")
def fixture_forwarder(
    cluster: FakeClusterClient,
    retry_policy: RetryPolicy,
    sleeps: list[float],
) -> Forwarder:
    return Forwarder(cluster, retry_policy, sleep=sleeps.append)


@pytest.fixture(name="gateway")
def fixture_gateway(policy: AdmissionPolicy, forwarder: Forwarder) -> Gateway:
    return Gateway(policy, forwarder)


def _pod(
    name: str = "web-1",
    namespace: str | None = "default",
    image: str = "nginx:latest",
    **spec: Any,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": metadata,
        "spec": {"containers": [{"name": "web", "image": image}], **spec},
    }


@pytest.fixture(name="pod_yaml")
def fixture_pod_yaml() -> str:
    return POD_YAML


@pytest.fixture(name="make_pod")
def fixture_make_pod() -> Callable[..., dict[str, Any]]:
    return _pod


@pytest.fixture(name="restore_logger")
def fixture_restore_logger() -> Iterator[None]:
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
