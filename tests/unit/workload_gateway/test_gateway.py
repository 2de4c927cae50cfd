#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from collections.abc import Callable
from typing import Any
from unittest.mock import Mock

import pytest
import yaml

from tests.unit.workload_gateway.conftest import FakeClusterClient

from workload_gateway.cluster import ThrottledError, UnauthorizedError
from workload_gateway.forwarder import Forwarder
from workload_gateway.gateway import Gateway
from workload_gateway.models import ErrorKind, ResponseEnvelope, WorkloadRequest
from workload_gateway.validation import AdmissionPolicy


def _request(manifest: dict[str, Any], **kwargs: Any) -> WorkloadRequest:
    return WorkloadRequest(document=yaml.safe_dump(manifest), **kwargs)


def test_first_call_creates_second_call_already_exists(
    cluster: FakeClusterClient,
    gateway: Gateway,
) -> None:
    request = WorkloadRequest(
        document="kind: Pod\napiVersion: v1\nmetadata: {name: web-1, namespace: default}\n"
        "spec: {containers: [{name: web, image: 'nginx:latest'}]}\n"
    )
    expected = ResponseEnvelope(success=True, object_identity="Pod/default/web-1")

    assert gateway.handle(request) == expected
    assert gateway.handle(request) == expected
    assert cluster.create_calls == 2
    assert len(cluster.objects) == 1


def test_colliding_name_with_other_content_is_rejected(
    make_pod: Callable[..., dict[str, Any]],
    gateway: Gateway,
) -> None:
    assert gateway.handle(_request(make_pod())).success
    envelope = gateway.handle(_request(make_pod(image="redis:7")))
    assert not envelope.success
    assert envelope.error_kind is ErrorKind.REJECTED
    assert envelope.error_message is not None


@pytest.mark.parametrize(
    "document, error_kind",
    [
        pytest.param("metadata: {name: web-1", ErrorKind.PARSE_ERROR, id="parse"),
        pytest.param(
            "apiVersion: v1\nkind: Pod\nmetadata: {namespace: default}\n",
            ErrorKind.SCHEMA_ERROR,
            id="schema",
        ),
        pytest.param(
            "apiVersion: v1\nkind: Pod\nmetadata: {name: web-1, namespace: default}\n"
            "spec: {hostNetwork: true, containers: [{name: web, image: nginx}]}\n",
            ErrorKind.POLICY_ERROR,
            id="policy",
        ),
    ],
)
def test_invalid_requests_never_reach_the_cluster(
    document: str,
    error_kind: ErrorKind,
    policy: AdmissionPolicy,
) -> None:
    forwarder = Mock(spec=Forwarder)
    envelope = Gateway(policy, forwarder).handle(WorkloadRequest(document=document))

    assert not envelope.success
    assert envelope.error_kind is error_kind
    assert envelope.error_message
    assert envelope.object_identity is None
    forwarder.forward.assert_not_called()


def test_transient_envelope(
    cluster: FakeClusterClient,
    make_pod: Callable[..., dict[str, Any]],
    gateway: Gateway,
) -> None:
    cluster.create_failures = [ThrottledError("503 Service Unavailable")] * 3
    assert gateway.handle(_request(make_pod())) == ResponseEnvelope(
        success=False,
        error_kind=ErrorKind.TRANSIENT,
        error_message="503 Service Unavailable",
    )


def test_fatal_envelope(
    cluster: FakeClusterClient,
    make_pod: Callable[..., dict[str, Any]],
    gateway: Gateway,
) -> None:
    cluster.create_failures = [UnauthorizedError("403 Forbidden")]
    assert gateway.handle(_request(make_pod())) == ResponseEnvelope(
        success=False,
        error_kind=ErrorKind.FATAL,
        error_message="403 Forbidden",
    )


def test_unexpected_forwarder_failure_is_reported(
    make_pod: Callable[..., dict[str, Any]],
    policy: AdmissionPolicy,
) -> None:
    forwarder = Mock(spec=Forwarder)
    forwarder.forward.side_effect = RuntimeError("boom")

    envelope = Gateway(policy, forwarder).handle(_request(make_pod()))

    assert envelope.error_kind is ErrorKind.FATAL
    assert envelope.error_message == "Unexpected error: boom"


def test_token_and_timeout_are_passed_on(
    make_pod: Callable[..., dict[str, Any]],
    policy: AdmissionPolicy,
    forwarder: Forwarder,
) -> None:
    spy = Mock(wraps=forwarder)
    cancelled = Mock(return_value=False)

    Gateway(policy, spy).handle(
        _request(make_pod(), idempotency_token="req-1"),
        timeout=2.0,
        cancelled=cancelled,
    )
    Gateway(policy, spy).handle(_request(make_pod(), idempotency_token="req-2"))

    (workload, first_key), first_kwargs = spy.forward.call_args_list[0]
    (_workload, second_key), _kwargs = spy.forward.call_args_list[1]
    assert workload.name == "web-1"
    assert first_key != second_key
    assert first_kwargs == {"timeout": 2.0, "cancelled": cancelled}
