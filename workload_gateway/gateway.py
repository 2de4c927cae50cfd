#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from collections.abc import Callable, Mapping
from typing import Optional

from workload_gateway.forwarder import Forwarder
from workload_gateway.keys import derive_key
from workload_gateway.log import logger
from workload_gateway.models import (
    AdmissionResult,
    AlreadyExists,
    Created,
    ErrorKind,
    Fatal,
    Rejected,
    ResponseEnvelope,
    Transient,
    WorkloadRequest,
)
from workload_gateway.validation import (
    AdmissionPolicy,
    ParseError,
    PolicyError,
    SchemaError,
    validate,
    WorkloadValidationError,
)

_VALIDATION_ERROR_KINDS: Mapping[type[WorkloadValidationError], ErrorKind] = {
    ParseError: ErrorKind.PARSE_ERROR,
    SchemaError: ErrorKind.SCHEMA_ERROR,
    PolicyError: ErrorKind.POLICY_ERROR,
}


def _envelope(result: AdmissionResult) -> ResponseEnvelope:
    match result:
        case Created(identity) | AlreadyExists(identity):
            return ResponseEnvelope(success=True, object_identity=str(identity))
        case Rejected(reason):
            return ResponseEnvelope(
                success=False, error_kind=ErrorKind.REJECTED, error_message=reason
            )
        case Transient(detail):
            return ResponseEnvelope(
                success=False, error_kind=ErrorKind.TRANSIENT, error_message=detail
            )
        case Fatal(detail):
            return ResponseEnvelope(success=False, error_kind=ErrorKind.FATAL, error_message=detail)
    raise TypeError(f"Unknown admission result: {result!r}")


class Gateway:
    """The single entry point of the HTTP and gRPC adapters"""

    def __init__(self, policy: AdmissionPolicy, forwarder: Forwarder) -> None:
        self._policy = policy
        self._forwarder = forwarder

    def handle(
        self,
        raw: WorkloadRequest,
        *,
        timeout: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> ResponseEnvelope:
        logger.debug("namespace=%s Validating request", raw.namespace or "[from document]")
        try:
            workload = validate(raw, self._policy)
        except WorkloadValidationError as e:
            logger.info("namespace=%s Request rejected: %s", raw.namespace, e)
            return ResponseEnvelope(
                success=False,
                error_kind=_VALIDATION_ERROR_KINDS[type(e)],
                error_message=str(e),
            )

        key = derive_key(workload, raw.idempotency_token)
        logger.debug(
            "key=%s Forwarding %s %s/%s", key, workload.kind, workload.namespace, workload.name
        )

        try:
            result = self._forwarder.forward(workload, key, timeout=timeout, cancelled=cancelled)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("key=%s Forwarding failed unexpectedly", key)
            result = Fatal(f"Unexpected error: {e}")

        return _envelope(result)
