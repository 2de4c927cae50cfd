#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from fastapi import FastAPI

from workload_gateway.endpoints import WORKLOAD_ROUTER
from workload_gateway.gateway import Gateway


def main_app(gateway: Gateway) -> FastAPI:
    app = FastAPI(
        title="Workload Gateway",
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.gateway = gateway
    app.include_router(WORKLOAD_ROUTER)
    return app
