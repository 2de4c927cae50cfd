#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""gRPC adapter of the gateway

There are no generated stubs: the service is registered through a generic
handler and its messages travel as JSON documents. Request messages look like

    {"namespace": "default", "document": "<pod manifest>", "idempotency_token": null}

and responses are serialized ResponseEnvelopes.
"""

from collections.abc import Callable
from concurrent import futures
from typing import Optional

import grpc  # type: ignore[import]
from pydantic import BaseModel, ValidationError

from workload_gateway.gateway import Gateway
from workload_gateway.log import logger
from workload_gateway.models import ResponseEnvelope, WorkloadRequest

SERVICE_NAME = "workloadgateway.v1.WorkloadGateway"
CREATE_WORKLOAD = "CreateWorkload"


class CreateWorkloadMessage(BaseModel, frozen=True):
    document: str
    namespace: str = ""
    idempotency_token: Optional[str] = None


def _serialize_envelope(envelope: ResponseEnvelope) -> bytes:
    return envelope.model_dump_json().encode()


def _serialize_message(message: CreateWorkloadMessage) -> bytes:
    return message.model_dump_json().encode()


class WorkloadGatewayServicer:
    def __init__(self, gateway: Gateway) -> None:
        self._gateway = gateway

    def create_workload(self, request: bytes, context: grpc.ServicerContext) -> ResponseEnvelope:
        try:
            message = CreateWorkloadMessage.model_validate_json(request)
        except ValidationError as e:
            logger.error("Malformed %s message from %s: %s", CREATE_WORKLOAD, context.peer(), e)
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Malformed request message: {e}")

        return self._gateway.handle(
            WorkloadRequest(
                document=message.document,
                namespace=message.namespace,
                idempotency_token=message.idempotency_token,
            ),
            timeout=context.time_remaining(),
            cancelled=lambda: not context.is_active(),
        )


def generic_handler(servicer: WorkloadGatewayServicer) -> grpc.GenericRpcHandler:
    return grpc.method_handlers_generic_handler(
        SERVICE_NAME,
        {
            CREATE_WORKLOAD: grpc.unary_unary_rpc_method_handler(
                servicer.create_workload,
                response_serializer=_serialize_envelope,
            ),
        },
    )


def make_server(gateway: Gateway, address: str, workers: int) -> tuple[grpc.Server, int]:
    """Create a gRPC server listening on address, return it with the bound port"""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=workers))
    server.add_generic_rpc_handlers((generic_handler(WorkloadGatewayServicer(gateway)),))
    port = server.add_insecure_port(address)
    return server, port


def create_workload_stub(
    channel: grpc.Channel,
) -> Callable[..., ResponseEnvelope]:
    return channel.unary_unary(
        f"/{SERVICE_NAME}/{CREATE_WORKLOAD}",
        request_serializer=_serialize_message,
        response_deserializer=ResponseEnvelope.model_validate_json,
    )
