#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from collections.abc import Callable, Mapping
from http import HTTPStatus
from pathlib import Path
from typing import Any, Optional, Protocol

import urllib3

# We currently have no typeshed for kubernetes
from kubernetes import client, config  # type: ignore[import]
from kubernetes.client.rest import ApiException  # type: ignore[import]

from workload_gateway.log import logger
from workload_gateway.models import ObjectIdentity, RemoteObject


class RemoteError(Exception):
    ...


class AlreadyExistsError(RemoteError):
    ...


class ThrottledError(RemoteError):
    ...


class UnauthorizedError(RemoteError):
    ...


class InvalidObjectError(RemoteError):
    ...


class UnknownRemoteError(RemoteError):
    ...


class TransportError(RemoteError):
    ...


TRANSIENT_ERRORS = (ThrottledError, TransportError)


class ClusterClient(Protocol):
    def create_object(
        self,
        namespace: str,
        manifest: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ObjectIdentity:
        ...

    def read_object(
        self,
        namespace: str,
        kind: str,
        name: str,
        *,
        timeout: float,
    ) -> RemoteObject:
        ...


_ERRORS_BY_STATUS: Mapping[int, type[RemoteError]] = {
    HTTPStatus.CONFLICT: AlreadyExistsError,
    HTTPStatus.TOO_MANY_REQUESTS: ThrottledError,
    HTTPStatus.SERVICE_UNAVAILABLE: ThrottledError,
    HTTPStatus.GATEWAY_TIMEOUT: ThrottledError,
    HTTPStatus.UNAUTHORIZED: UnauthorizedError,
    HTTPStatus.FORBIDDEN: UnauthorizedError,
    HTTPStatus.BAD_REQUEST: InvalidObjectError,
    HTTPStatus.NOT_FOUND: InvalidObjectError,
    HTTPStatus.UNPROCESSABLE_ENTITY: InvalidObjectError,
}


def _remote_error(e: ApiException) -> RemoteError:
    """
    >>> type(_remote_error(ApiException(status=409, reason="Conflict"))).__name__
    'AlreadyExistsError'
    >>> type(_remote_error(ApiException(status=500, reason="Internal Server Error"))).__name__
    'UnknownRemoteError'
    """
    return _ERRORS_BY_STATUS.get(e.status, UnknownRemoteError)(
        f"{e.status} {e.reason}: {e.body}" if e.body else f"{e.status} {e.reason}"
    )


def _identity(kind: str, obj: Any) -> ObjectIdentity:
    return ObjectIdentity(
        kind=kind,
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        uid=obj.metadata.uid,
    )


class KubernetesClusterClient:
    def __init__(self, api_client: client.ApiClient) -> None:
        core_api = client.CoreV1Api(api_client)
        self._create: Mapping[str, Callable[..., Any]] = {"Pod": core_api.create_namespaced_pod}
        self._read: Mapping[str, Callable[..., Any]] = {"Pod": core_api.read_namespaced_pod}

    @staticmethod
    def _call(api_call: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return api_call(*args, **kwargs)
        except ApiException as e:
            raise _remote_error(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"Request to the API server failed: {e}") from e

    def create_object(
        self,
        namespace: str,
        manifest: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ObjectIdentity:
        if (create := self._create.get(kind := manifest["kind"])) is None:
            raise InvalidObjectError(f"Unsupported kind: {kind}")
        return _identity(
            kind,
            self._call(create, namespace, manifest, _request_timeout=timeout),
        )

    def read_object(
        self,
        namespace: str,
        kind: str,
        name: str,
        *,
        timeout: float,
    ) -> RemoteObject:
        if (read := self._read.get(kind)) is None:
            raise InvalidObjectError(f"Unsupported kind: {kind}")
        obj = self._call(read, name, namespace, _request_timeout=timeout)
        return RemoteObject(
            identity=_identity(kind, obj),
            annotations=dict(obj.metadata.annotations or {}),
        )


def get_api_client(kubeconfig: Optional[Path], context: Optional[str] = None) -> client.ApiClient:
    logger.info("Constructing API client")

    configuration = client.Configuration()
    if kubeconfig is not None:
        config.load_kube_config(
            config_file=str(kubeconfig),
            context=context,
            client_configuration=configuration,
        )
    else:
        config.load_incluster_config(client_configuration=configuration)

    return client.ApiClient(configuration)
