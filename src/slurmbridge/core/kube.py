# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Kubernetes implementation of the ControlPlane protocol.

This module provides:
- build_manifest(): WorkloadSpec -> batch/v1 Job or kubeflow.org/v1 PyTorchJob
- job_phase() / pytorchjob_phase(): object status -> ObservedPhase
- classify_api_exception(): ApiException -> Transient/RejectedDispatchError
- KubeControlPlane: BatchV1Api + CustomObjectsApi client wrapper
"""

import json
import logging
from collections.abc import Iterator
from typing import Any

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from slurmbridge.contract import ObservedPhase
from slurmbridge.core.errors import (
    DispatchError,
    ReconcileError,
    RejectedDispatchError,
    TransientDispatchError,
)
from slurmbridge.core.identity import (
    IDEMPOTENCY_KEY_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SPEC_HASH_ANNOTATION,
)
from slurmbridge.core.models import ObjectRef, PhaseEvent, WorkloadKind, WorkloadSpec
from slurmbridge.core.schema import KubeConfig

logger = logging.getLogger(__name__)

MANAGED_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"

PYTORCHJOB_GROUP = "kubeflow.org"
PYTORCHJOB_VERSION = "v1"
PYTORCHJOB_PLURAL = "pytorchjobs"

TRANSIENT_STATUSES = frozenset({0, 408, 425, 429, 500, 502, 503, 504})


# ============================================================================
# Manifests
# ============================================================================


def _container(spec: WorkloadSpec, name: str) -> dict[str, Any]:
    container: dict[str, Any] = {
        "name": name,
        "image": spec.image,
        "resources": {
            "limits": dict(sorted(spec.limits.items())),
            "requests": dict(sorted(spec.requests.items())),
        },
        "env": [{"name": k, "value": v} for k, v in sorted(spec.environment.items())],
    }
    if spec.command:
        container["command"] = list(spec.command)
    return container


def _pod_template(spec: WorkloadSpec, container_name: str) -> dict[str, Any]:
    pod_spec: dict[str, Any] = {
        "restartPolicy": spec.restart_policy,
        "containers": [_container(spec, container_name)],
    }
    if spec.node_selector:
        pod_spec["nodeSelector"] = dict(sorted(spec.node_selector.items()))
    return {"metadata": {"labels": dict(spec.labels)}, "spec": pod_spec}


def _metadata(spec: WorkloadSpec) -> dict[str, Any]:
    annotations = dict(spec.annotations)
    annotations[SPEC_HASH_ANNOTATION] = spec.spec_hash()
    return {
        "name": spec.name,
        "namespace": spec.namespace,
        "labels": dict(spec.labels),
        "annotations": annotations,
    }


def build_job_manifest(spec: WorkloadSpec) -> dict[str, Any]:
    """batch/v1 Job. Multi-replica jobs run as Indexed jobs."""
    job_spec: dict[str, Any] = {
        "backoffLimit": 0,
        "completions": spec.replicas,
        "parallelism": spec.replicas,
        "template": _pod_template(spec, "workload"),
    }
    if spec.replicas > 1:
        job_spec["completionMode"] = "Indexed"
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _metadata(spec),
        "spec": job_spec,
    }


def build_pytorchjob_manifest(spec: WorkloadSpec) -> dict[str, Any]:
    """kubeflow.org/v1 PyTorchJob: one Master plus ``replicas - 1`` Workers."""
    replica_specs: dict[str, Any] = {
        "Master": {
            "replicas": 1,
            "restartPolicy": spec.restart_policy,
            "template": _pod_template(spec, "pytorch"),
        }
    }
    if spec.replicas > 1:
        replica_specs["Worker"] = {
            "replicas": spec.replicas - 1,
            "restartPolicy": spec.restart_policy,
            "template": _pod_template(spec, "pytorch"),
        }
    return {
        "apiVersion": f"{PYTORCHJOB_GROUP}/{PYTORCHJOB_VERSION}",
        "kind": "PyTorchJob",
        "metadata": _metadata(spec),
        "spec": {"pytorchReplicaSpecs": replica_specs},
    }


def build_manifest(spec: WorkloadSpec) -> dict[str, Any]:
    if spec.kind is WorkloadKind.DISTRIBUTED_TRAINING:
        return build_pytorchjob_manifest(spec)
    return build_job_manifest(spec)


# ============================================================================
# Status mapping
# ============================================================================


def job_phase(job: Any) -> ObservedPhase:
    """Map a V1Job onto an ObservedPhase."""
    status = job.status
    if status is None:
        return ObservedPhase.PENDING

    for condition in status.conditions or []:
        if condition.status != "True":
            continue
        if condition.type in ("Complete", "SuccessCriteriaMet"):
            return ObservedPhase.SUCCEEDED
        if condition.type in ("Failed", "FailureTarget"):
            return ObservedPhase.FAILED

    completions = (job.spec.completions if job.spec else None) or 1
    if (status.succeeded or 0) >= completions:
        return ObservedPhase.SUCCEEDED
    if (status.active or 0) > 0:
        return ObservedPhase.RUNNING
    return ObservedPhase.PENDING


def pytorchjob_phase(obj: dict[str, Any]) -> ObservedPhase:
    """Map a PyTorchJob dict onto an ObservedPhase (last true condition wins)."""
    conditions = (obj.get("status") or {}).get("conditions") or []
    phase = ObservedPhase.PENDING
    for condition in conditions:
        if condition.get("status") != "True":
            continue
        kind = condition.get("type")
        if kind == "Succeeded":
            phase = ObservedPhase.SUCCEEDED
        elif kind == "Failed":
            phase = ObservedPhase.FAILED
        elif kind == "Running":
            phase = ObservedPhase.RUNNING
    return phase


def _api_message(e: ApiException) -> str:
    try:
        return json.loads(e.body).get("message") or e.reason
    except (TypeError, ValueError, AttributeError):
        return e.reason or str(e)


def classify_api_exception(e: ApiException) -> DispatchError:
    """Timeouts, throttling and server errors are transient; the rest is rejected."""
    status = e.status or 0
    reason = f"HTTP {status}: {_api_message(e)}"
    if status in TRANSIENT_STATUSES or status >= 500:
        return TransientDispatchError(reason, status=status)
    return RejectedDispatchError(reason, status=status)


# ============================================================================
# Client
# ============================================================================


class KubeControlPlane:
    """ControlPlane backed by the Kubernetes API.

    Usage:
        control_plane = KubeControlPlane.from_config(config.kube)
        ref = control_plane.create_workload(spec, key, timeout=10)
    """

    def __init__(
        self,
        batch_api: client.BatchV1Api,
        custom_api: client.CustomObjectsApi,
        training_operator: bool = True,
    ):
        self.batch = batch_api
        self.custom = custom_api
        self.training_operator = training_operator

    @classmethod
    def from_config(cls, kube: KubeConfig, training_operator: bool = True) -> "KubeControlPlane":
        if kube.in_cluster:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            api_client = client.ApiClient(configuration)
        else:
            api_client = config.new_client_from_config(config_file=kube.kubeconfig, context=kube.context)
        return cls(
            client.BatchV1Api(api_client),
            client.CustomObjectsApi(api_client),
            training_operator=training_operator,
        )

    @property
    def kinds(self) -> tuple[WorkloadKind, ...]:
        if self.training_operator:
            return (WorkloadKind.BATCH_JOB, WorkloadKind.DISTRIBUTED_TRAINING)
        return (WorkloadKind.BATCH_JOB,)

    # ------------------------------------------------------------------
    # Create / get / delete
    # ------------------------------------------------------------------

    def create_workload(self, spec: WorkloadSpec, idempotency_key: str, timeout: float) -> ObjectRef:
        if spec.kind not in self.kinds:
            raise RejectedDispatchError(f"Workload kind {spec.kind.value} is not enabled")

        manifest = build_manifest(spec)
        try:
            if spec.kind is WorkloadKind.BATCH_JOB:
                created = self.batch.create_namespaced_job(spec.namespace, manifest, _request_timeout=timeout)
                uid = created.metadata.uid
            else:
                created = self.custom.create_namespaced_custom_object(
                    PYTORCHJOB_GROUP,
                    PYTORCHJOB_VERSION,
                    spec.namespace,
                    PYTORCHJOB_PLURAL,
                    manifest,
                    _request_timeout=timeout,
                )
                uid = created["metadata"].get("uid")
        except ApiException as e:
            if e.status == 409:
                logger.info("Workload %s/%s already exists, adopting it", spec.namespace, spec.name)
                return self._adopt(spec, idempotency_key, timeout)
            raise classify_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientDispatchError(f"Control plane unreachable: {e}") from e

        logger.info("Created %s %s/%s", spec.kind.value, spec.namespace, spec.name)
        return ObjectRef(kind=spec.kind, namespace=spec.namespace, name=spec.name, uid=uid)

    def _adopt(self, spec: WorkloadSpec, idempotency_key: str, timeout: float) -> ObjectRef:
        """Return the existing object with our name if it carries our key."""
        ref = ObjectRef(kind=spec.kind, namespace=spec.namespace, name=spec.name)
        labels, uid = self._read_metadata(ref, timeout)
        if labels.get(IDEMPOTENCY_KEY_LABEL) != idempotency_key:
            raise RejectedDispatchError(
                f"{ref} exists but is not owned by key {idempotency_key}",
                status=409,
            )
        return ObjectRef(kind=spec.kind, namespace=spec.namespace, name=spec.name, uid=uid)

    def _read(self, ref: ObjectRef, timeout: float) -> Any:
        if ref.kind is WorkloadKind.BATCH_JOB:
            return self.batch.read_namespaced_job_status(ref.name, ref.namespace, _request_timeout=timeout)
        return self.custom.get_namespaced_custom_object_status(
            PYTORCHJOB_GROUP,
            PYTORCHJOB_VERSION,
            ref.namespace,
            PYTORCHJOB_PLURAL,
            ref.name,
            _request_timeout=timeout,
        )

    def _read_metadata(self, ref: ObjectRef, timeout: float) -> tuple[dict[str, str], str | None]:
        try:
            obj = self._read(ref, timeout)
        except ApiException as e:
            raise classify_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientDispatchError(f"Control plane unreachable: {e}") from e
        if ref.kind is WorkloadKind.BATCH_JOB:
            return dict(obj.metadata.labels or {}), obj.metadata.uid
        metadata = obj.get("metadata") or {}
        return dict(metadata.get("labels") or {}), metadata.get("uid")

    def get_phase(self, ref: ObjectRef, timeout: float) -> PhaseEvent:
        try:
            obj = self._read(ref, timeout)
        except ApiException as e:
            if e.status == 404:
                return PhaseEvent(ref=ref, phase=ObservedPhase.MISSING, message="object not found")
            raise classify_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientDispatchError(f"Control plane unreachable: {e}") from e
        return self._event(ref.kind, obj)

    def delete_workload(self, ref: ObjectRef, timeout: float) -> None:
        try:
            if ref.kind is WorkloadKind.BATCH_JOB:
                self.batch.delete_namespaced_job(
                    ref.name,
                    ref.namespace,
                    propagation_policy="Background",
                    _request_timeout=timeout,
                )
            else:
                self.custom.delete_namespaced_custom_object(
                    PYTORCHJOB_GROUP,
                    PYTORCHJOB_VERSION,
                    ref.namespace,
                    PYTORCHJOB_PLURAL,
                    ref.name,
                    _request_timeout=timeout,
                )
        except ApiException as e:
            if e.status == 404:
                logger.debug("Workload %s already deleted", ref)
                return
            raise classify_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientDispatchError(f"Control plane unreachable: {e}") from e
        logger.info("Deleted %s %s", ref.kind.value, ref)

    # ------------------------------------------------------------------
    # List / watch
    # ------------------------------------------------------------------

    def list_phases(self, timeout: float) -> list[PhaseEvent]:
        events: list[PhaseEvent] = []
        try:
            jobs = self.batch.list_job_for_all_namespaces(label_selector=MANAGED_SELECTOR, _request_timeout=timeout)
            events.extend(self._event(WorkloadKind.BATCH_JOB, job) for job in jobs.items)

            if self.training_operator:
                try:
                    pytorchjobs = self.custom.list_cluster_custom_object(
                        PYTORCHJOB_GROUP,
                        PYTORCHJOB_VERSION,
                        PYTORCHJOB_PLURAL,
                        label_selector=MANAGED_SELECTOR,
                        _request_timeout=timeout,
                    )
                except ApiException as e:
                    if e.status != 404:
                        raise
                    logger.warning("PyTorchJob CRD not installed; distributed workloads disabled")
                    self.training_operator = False
                else:
                    events.extend(
                        self._event(WorkloadKind.DISTRIBUTED_TRAINING, obj) for obj in pytorchjobs.get("items", [])
                    )
        except ApiException as e:
            raise classify_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientDispatchError(f"Control plane unreachable: {e}") from e
        return events

    def watch_phases(self, kind: WorkloadKind, timeout_seconds: int) -> Iterator[PhaseEvent]:
        w = watch.Watch()
        try:
            if kind is WorkloadKind.BATCH_JOB:
                stream = w.stream(
                    self.batch.list_job_for_all_namespaces,
                    label_selector=MANAGED_SELECTOR,
                    timeout_seconds=timeout_seconds,
                )
            else:
                stream = w.stream(
                    self.custom.list_cluster_custom_object,
                    PYTORCHJOB_GROUP,
                    PYTORCHJOB_VERSION,
                    PYTORCHJOB_PLURAL,
                    label_selector=MANAGED_SELECTOR,
                    timeout_seconds=timeout_seconds,
                )
            for event in stream:
                event_type = event.get("type")
                obj = event.get("object")
                if event_type == "ERROR":
                    raise ReconcileError(f"Watch error for {kind.value}: {obj}")
                phase_event = self._event(kind, obj)
                if event_type == "DELETED":
                    phase_event = PhaseEvent(
                        ref=phase_event.ref,
                        phase=ObservedPhase.MISSING,
                        idempotency_key=phase_event.idempotency_key,
                        message="object deleted",
                    )
                yield phase_event
        except ApiException as e:
            raise ReconcileError(f"Watch for {kind.value} failed: {classify_api_exception(e)}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ReconcileError(f"Watch for {kind.value} interrupted: {e}") from e
        finally:
            w.stop()

    def _event(self, kind: WorkloadKind, obj: Any) -> PhaseEvent:
        if kind is WorkloadKind.BATCH_JOB:
            metadata = obj.metadata
            ref = ObjectRef(kind=kind, namespace=metadata.namespace, name=metadata.name, uid=metadata.uid)
            key = (metadata.labels or {}).get(IDEMPOTENCY_KEY_LABEL)
            return PhaseEvent(ref=ref, phase=job_phase(obj), idempotency_key=key)

        metadata = obj.get("metadata") or {}
        ref = ObjectRef(kind=kind, namespace=metadata.get("namespace"), name=metadata.get("name"), uid=metadata.get("uid"))
        key = (metadata.get("labels") or {}).get(IDEMPOTENCY_KEY_LABEL)
        return PhaseEvent(ref=ref, phase=pytorchjob_phase(obj), idempotency_key=key)
