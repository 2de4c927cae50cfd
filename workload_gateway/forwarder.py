#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from tenacity import (
    retry_if_exception_type,
    RetryCallState,
    Retrying,
    stop_after_attempt,
    wait_exponential_jitter,
)

from workload_gateway.cluster import (
    AlreadyExistsError,
    ClusterClient,
    InvalidObjectError,
    TRANSIENT_ERRORS,
    UnauthorizedError,
    UnknownRemoteError,
)
from workload_gateway.log import logger
from workload_gateway.models import (
    AdmissionResult,
    AlreadyExists,
    Created,
    DedupKey,
    Fatal,
    Rejected,
    Transient,
    ValidatedWorkload,
)
from workload_gateway.validation import RESERVED_ANNOTATION_PREFIX

DEDUP_KEY_ANNOTATION = f"{RESERVED_ANNOTATION_PREFIX}dedup-key"
CONTENT_DIGEST_ANNOTATION = f"{RESERVED_ANNOTATION_PREFIX}content-digest"


class RequestCancelled(Exception):
    ...


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    timeout: float = 10.0
    backoff_base: float = 0.2
    backoff_max: float = 5.0
    backoff_jitter: float = 0.2

    def call_timeout(self, caller_timeout: Optional[float]) -> float:
        """
        >>> RetryPolicy(timeout=10.0).call_timeout(None)
        10.0
        >>> RetryPolicy(timeout=10.0).call_timeout(2.5)
        2.5
        >>> RetryPolicy(timeout=10.0).call_timeout(30.0)
        10.0
        """
        return self.timeout if caller_timeout is None else min(self.timeout, caller_timeout)


def stamped_manifest(workload: ValidatedWorkload, key: DedupKey) -> dict[str, Any]:
    manifest = workload.manifest()
    annotations = manifest["metadata"].setdefault("annotations", {})
    annotations[DEDUP_KEY_ANNOTATION] = key
    annotations[CONTENT_DIGEST_ANNOTATION] = workload.content_digest
    return manifest


class Forwarder:
    """Create a validated workload on the cluster, at most once per dedup key

    Only throttling and transport failures are retried, always with the very
    same manifest and key. An "already exists" answer is resolved by reading the
    existing object back and comparing its stamped annotations: the same key and
    content means an earlier attempt (or submission) already succeeded.
    """

    def __init__(
        self,
        cluster_client: ClusterClient,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = cluster_client
        self._policy = retry_policy
        self._sleep = sleep

    def forward(
        self,
        workload: ValidatedWorkload,
        key: DedupKey,
        *,
        timeout: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> AdmissionResult:
        retrying = Retrying(
            stop=stop_after_attempt(self._policy.attempts),
            wait=wait_exponential_jitter(
                initial=self._policy.backoff_base,
                max=self._policy.backoff_max,
                jitter=self._policy.backoff_jitter,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            sleep=self._sleep,
            before_sleep=_log_retry(key),
            reraise=True,
        )
        try:
            return retrying(
                self._attempt,
                workload,
                key,
                stamped_manifest(workload, key),
                self._policy.call_timeout(timeout),
                cancelled,
            )
        except RequestCancelled:
            logger.warning("key=%s Request cancelled, no further attempts", key)
            return Transient("request cancelled")
        except TRANSIENT_ERRORS as e:
            logger.error("key=%s Giving up after %d attempts: %s", key, self._policy.attempts, e)
            return Transient(str(e))
        except (UnauthorizedError, InvalidObjectError, UnknownRemoteError) as e:
            logger.error("key=%s Creating %s failed: %s", key, workload.name, e)
            return Fatal(str(e))

    def _attempt(
        self,
        workload: ValidatedWorkload,
        key: DedupKey,
        manifest: dict[str, Any],
        timeout: float,
        cancelled: Optional[Callable[[], bool]],
    ) -> AdmissionResult:
        if cancelled is not None and cancelled():
            raise RequestCancelled()
        try:
            identity = self._client.create_object(workload.namespace, manifest, timeout=timeout)
        except AlreadyExistsError:
            return self._resolve_conflict(workload, key, timeout)
        logger.info("key=%s Created %s", key, identity)
        return Created(identity)

    def _resolve_conflict(
        self,
        workload: ValidatedWorkload,
        key: DedupKey,
        timeout: float,
    ) -> AdmissionResult:
        existing = self._client.read_object(
            workload.namespace,
            workload.kind,
            workload.name,
            timeout=timeout,
        )
        if (
            existing.annotations.get(DEDUP_KEY_ANNOTATION) == key
            and existing.annotations.get(CONTENT_DIGEST_ANNOTATION) == workload.content_digest
        ):
            logger.info("key=%s %s already exists", key, existing.identity)
            return AlreadyExists(existing.identity)
        logger.warning("key=%s %s exists with different content", key, existing.identity)
        return Rejected(f"{existing.identity} already exists and belongs to a different request")


def _log_retry(key: DedupKey) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        logger.warning(
            "key=%s Attempt %d failed: %s. Retrying in %.2fs",
            key,
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else None,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    return log
