#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import hashlib
import json
from typing import Optional

from workload_gateway.models import DedupKey, ValidatedWorkload


def _digest(domain: str, payload: str) -> DedupKey:
    """
    >>> _digest("token", "abc") == _digest("token", "abc")
    True
    >>> _digest("token", "abc") == _digest("object", "abc")
    False
    """
    return DedupKey(hashlib.sha256(f"{domain}\n{payload}".encode()).hexdigest())


def derive_key(workload: ValidatedWorkload, token: Optional[str]) -> DedupKey:
    """Derive the deduplication key of a workload

    A caller supplied token wins. Otherwise the key only depends on the
    namespace, kind and name of the object, so resubmitting the same workload
    always produces the same key, across process restarts.
    """
    if token:
        return _digest("token", token)
    return _digest("object", json.dumps([workload.namespace, workload.kind, workload.name]))
