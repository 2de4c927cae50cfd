#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from collections.abc import Mapping
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.status import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_403_FORBIDDEN,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from workload_gateway.gateway import Gateway
from workload_gateway.models import ErrorKind, ResponseEnvelope, WorkloadRequest

WORKLOAD_ROUTER = APIRouter()

_STATUS_BY_ERROR_KIND: Mapping[ErrorKind, int] = {
    ErrorKind.PARSE_ERROR: HTTP_400_BAD_REQUEST,
    ErrorKind.SCHEMA_ERROR: HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.POLICY_ERROR: HTTP_403_FORBIDDEN,
    ErrorKind.REJECTED: HTTP_409_CONFLICT,
    ErrorKind.TRANSIENT: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.FATAL: HTTP_502_BAD_GATEWAY,
}


def _gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def _response(envelope: ResponseEnvelope) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_ERROR_KIND[envelope.error_kind]
        if envelope.error_kind is not None
        else HTTP_200_OK,
        content=envelope.model_dump(mode="json"),
    )


async def _handle(
    gateway: Gateway,
    request: Request,
    namespace: str,
    idempotency_key: Optional[str],
    timeout: Optional[float],
) -> JSONResponse:
    workload_request = WorkloadRequest(
        document=await request.body(),
        namespace=namespace,
        idempotency_token=idempotency_key,
    )
    return _response(await run_in_threadpool(gateway.handle, workload_request, timeout=timeout))


@WORKLOAD_ROUTER.post("/namespaces/{namespace}/workloads", response_model=ResponseEnvelope)
async def create_workload(
    namespace: str,
    request: Request,
    *,
    gateway: Gateway = Depends(_gateway),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    timeout: Optional[float] = Query(None, gt=0),
) -> JSONResponse:
    return await _handle(gateway, request, namespace, idempotency_key, timeout)


@WORKLOAD_ROUTER.post("/create-pod", response_model=ResponseEnvelope)
async def create_pod(
    request: Request,
    *,
    gateway: Gateway = Depends(_gateway),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> JSONResponse:
    # The namespace comes from the document or the configured default
    return await _handle(gateway, request, "", idempotency_key, None)


@WORKLOAD_ROUTER.get("/health")
async def health() -> Mapping[str, str]:
    return {"status": "ok"}
