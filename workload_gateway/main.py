#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Admission gateway for workload creation requests

Serves the HTTP and the gRPC adapter of one gateway and forwards validated
workloads to the Kubernetes API server.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

# We currently have no typeshed for kubernetes
from kubernetes.config import ConfigException  # type: ignore[import]

from workload_gateway.apps import main_app
from workload_gateway.cluster import get_api_client, KubernetesClusterClient
from workload_gateway.config import (
    config_path,
    ConfigError,
    GatewayConfig,
    load_config,
    split_address,
)
from workload_gateway.forwarder import Forwarder
from workload_gateway.gateway import Gateway
from workload_gateway.grpc_service import make_server
from workload_gateway.log import configure_logger, logger


def parse_arguments(args: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description=__doc__)
    p.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: $WORKLOAD_GATEWAY_CONFIG)",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbose mode, log debug messages",
    )
    p.add_argument("--http-address", default=None, help="HOST:PORT of the HTTP endpoint")
    p.add_argument("--grpc-address", default=None, help="HOST:PORT of the gRPC endpoint")
    return p.parse_args(args)


def _effective_config(arguments: argparse.Namespace) -> GatewayConfig:
    gateway_config = load_config(arguments.config or config_path())
    overrides = {
        key: value
        for key, value in (
            ("http_address", arguments.http_address),
            ("grpc_address", arguments.grpc_address),
        )
        if value is not None
    }
    return GatewayConfig.model_validate({**gateway_config.model_dump(), **overrides})


def build_gateway(gateway_config: GatewayConfig) -> Gateway:
    cluster_client = KubernetesClusterClient(
        get_api_client(gateway_config.kubeconfig, gateway_config.kube_context)
    )
    return Gateway(
        gateway_config.policy(),
        Forwarder(cluster_client, gateway_config.retry_policy()),
    )


def main(args: Optional[List[str]] = None) -> int:
    arguments = parse_arguments(sys.argv[1:] if args is None else args)

    try:
        gateway_config = _effective_config(arguments)
    except (ConfigError, ValueError) as e:
        sys.stderr.write(f"{e}\n")
        return 1

    configure_logger(gateway_config.log_file, arguments.verbose)
    try:
        gateway = build_gateway(gateway_config)
    except (ConfigException, OSError) as e:
        sys.stderr.write(f"Cannot set up the Kubernetes API client: {e}\n")
        return 1

    grpc_server, grpc_port = make_server(
        gateway,
        gateway_config.grpc_address,
        gateway_config.grpc_workers,
    )
    grpc_server.start()
    logger.info("gRPC server listening on port %d", grpc_port)

    http_host, http_port = split_address(gateway_config.http_address)
    try:
        uvicorn.run(main_app(gateway), host=http_host, port=http_port, log_level="info")
    finally:
        grpc_server.stop(grace=5).wait()
        logger.info("Servers stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
