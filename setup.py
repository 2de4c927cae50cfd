#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from setuptools import find_packages, setup

setup(
    name="workload-gateway",
    version="0.1.0",
    packages=find_packages(include=["workload_gateway", "workload_gateway.*"]),
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "kubernetes>=28.1",
        "urllib3>=1.26",
        "tenacity>=8.2",
        "grpcio>=1.56",
    ],
    extras_require={
        "test": ["pytest", "httpx"],
    },
    entry_points={
        "console_scripts": ["workload-gateway=workload_gateway.main:main"],
    },
)
