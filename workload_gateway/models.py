#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NewType, Optional

from pydantic import BaseModel

DedupKey = NewType("DedupKey", str)

# Only the validator holds this; see ValidatedWorkload.__post_init__
_VALIDATOR_SEAL = object()


class WorkloadRequest(BaseModel, frozen=True):
    document: str | bytes
    namespace: str = ""
    idempotency_token: Optional[str] = None


@dataclass(frozen=True)
class ValidatedWorkload:
    kind: str
    name: str
    namespace: str
    images: tuple[str, ...]
    manifest_json: str
    content_digest: str
    _seal: object = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._seal is not _VALIDATOR_SEAL:
            raise TypeError("ValidatedWorkload can only be created by the request validator")

    @property
    def image(self) -> str:
        return self.images[0]

    def manifest(self) -> dict[str, Any]:
        """Return a fresh, mutable copy of the validated manifest"""
        return json.loads(self.manifest_json)


@dataclass(frozen=True)
class ObjectIdentity:
    kind: str
    namespace: str
    name: str
    uid: Optional[str] = None

    def __str__(self) -> str:
        """
        >>> str(ObjectIdentity("Pod", "default", "web-1", uid="1234"))
        'Pod/default/web-1'
        """
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class RemoteObject:
    identity: ObjectIdentity
    annotations: Mapping[str, str]


@dataclass(frozen=True)
class Created:
    identity: ObjectIdentity


@dataclass(frozen=True)
class AlreadyExists:
    identity: ObjectIdentity


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Transient:
    detail: str


@dataclass(frozen=True)
class Fatal:
    detail: str


AdmissionResult = Created | AlreadyExists | Rejected | Transient | Fatal


class ErrorKind(Enum):
    PARSE_ERROR = "parse_error"
    SCHEMA_ERROR = "schema_error"
    POLICY_ERROR = "policy_error"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ResponseEnvelope(BaseModel, frozen=True):
    success: bool
    object_identity: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
