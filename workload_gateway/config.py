#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import functools
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError

from workload_gateway.forwarder import RetryPolicy
from workload_gateway.validation import AdmissionPolicy, normalize_capability

CONFIG_ENV_VAR = "WORKLOAD_GATEWAY_CONFIG"


class ConfigError(Exception):
    ...


def split_address(address: str) -> tuple[str, int]:
    """
    >>> split_address("0.0.0.0:8080")
    ('0.0.0.0', 8080)
    >>> split_address("[::]:50051")
    ('::', 50051)
    """
    host, _, port = address.rpartition(":")
    return host.strip("[]"), int(port)


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    http_address: str = "0.0.0.0:8080"
    grpc_address: str = "[::]:50051"
    grpc_workers: int = Field(default=10, ge=1)
    request_timeout: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=0.2, ge=0)
    backoff_max: float = Field(default=5.0, ge=0)
    backoff_jitter: float = Field(default=0.2, ge=0)
    denied_capabilities: frozenset[str] = frozenset(
        {
            "privileged",
            "allowPrivilegeEscalation",
            "hostNetwork",
            "hostPID",
            "hostIPC",
            "hostPath",
            "SYS_ADMIN",
        }
    )
    default_namespace: str = "default"
    kubeconfig: Optional[Path] = None
    kube_context: Optional[str] = None
    log_file: Optional[Path] = None

    @field_validator("http_address", "grpc_address")
    @classmethod
    def valid_address(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f"Invalid listen address: '{v}', expected HOST:PORT")
        return v

    @field_validator("denied_capabilities")
    @classmethod
    def normalized_capabilities(cls, v: frozenset[str]) -> frozenset[str]:
        return frozenset(normalize_capability(c) for c in v)

    def policy(self) -> AdmissionPolicy:
        return AdmissionPolicy(
            denied_capabilities=self.denied_capabilities,
            default_namespace=self.default_namespace,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            timeout=self.request_timeout,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            backoff_jitter=self.backoff_jitter,
        )


@functools.lru_cache
def config_path() -> Optional[Path]:
    return Path(path) if (path := os.environ.get(CONFIG_ENV_VAR)) else None


def load_config(path: Optional[Path]) -> GatewayConfig:
    if path is None:
        return GatewayConfig()
    try:
        raw = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    try:
        return GatewayConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
