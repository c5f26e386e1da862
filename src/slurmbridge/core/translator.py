# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Submission -> workload translation.

Pure functions only: no I/O, no clocks, no randomness. The same descriptor
and config always give a byte-identical WorkloadSpec, which the dispatcher
relies on for idempotent creates.
"""

from dataclasses import dataclass

from slurmbridge.core.errors import MissingImageError, TranslationError, UnsupportedResourceError
from slurmbridge.core.identity import (
    IDEMPOTENCY_KEY_LABEL,
    JOB_NAME_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    USER_ANNOTATION,
    idempotency_key,
    sanitize_label_value,
    workload_name,
)
from slurmbridge.core.models import SubmissionDescriptor, WorkloadKind, WorkloadSpec
from slurmbridge.core.schema import TranslatorConfig


@dataclass(frozen=True)
class Translator:
    """Maps SubmissionDescriptors onto WorkloadSpecs.

    Usage:
        translator = Translator(config.translator)
        if translator.recognizes(descriptor):
            spec = translator.translate(descriptor)
    """

    config: TranslatorConfig

    def recognizes(self, descriptor: SubmissionDescriptor) -> bool:
        """True if any gres request names a mapped accelerator resource."""
        return any(g.name in self.config.resource_map for g in descriptor.gres)

    def resolve_image(self, descriptor: SubmissionDescriptor) -> str:
        image = descriptor.image or self.config.default_image
        if not image:
            raise MissingImageError(descriptor.job_name)
        return self.config.images.get(image, image)

    def translate(self, descriptor: SubmissionDescriptor) -> WorkloadSpec:
        """Build the WorkloadSpec for a descriptor.

        Raises:
            UnsupportedResourceError: a gres name has no resource mapping
            MissingImageError: no image in the descriptor and no default
            TranslationError: conflicting gres types for one node label
        """
        totals: dict[str, int] = {}
        node_selector: dict[str, str] = {}

        for gres in descriptor.gres:
            mapping = self.config.resource_map.get(gres.name)
            if mapping is None:
                raise UnsupportedResourceError(gres.name)
            totals[mapping.resource_name] = totals.get(mapping.resource_name, 0) + gres.count

            if gres.type and mapping.node_label:
                value = mapping.types.get(gres.type, gres.type)
                existing = node_selector.get(mapping.node_label)
                if existing is not None and existing != value:
                    raise TranslationError(
                        f"Conflicting {gres.name} types for {descriptor.job_name!r}: {existing!r} vs {value!r}"
                    )
                node_selector[mapping.node_label] = value

        resources = {name: str(count) for name, count in sorted(totals.items())}
        if descriptor.cpus_per_task:
            resources["cpu"] = str(descriptor.cpus_per_task)
        if descriptor.memory_mb:
            resources["memory"] = f"{descriptor.memory_mb}Mi"

        image = self.resolve_image(descriptor)
        key = idempotency_key(descriptor)

        if descriptor.num_nodes > 1 and self.config.distributed_kind_enabled:
            kind = WorkloadKind.DISTRIBUTED_TRAINING
        else:
            kind = WorkloadKind.BATCH_JOB

        labels = dict(sorted(self.config.labels.items()))
        labels.update(
            {
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                IDEMPOTENCY_KEY_LABEL: key,
                JOB_NAME_LABEL: sanitize_label_value(descriptor.job_name),
            }
        )

        environment = {
            name: descriptor.environment[name]
            for name in sorted(self.config.env_passthrough)
            if name in descriptor.environment
        }
        environment["SLURMBRIDGE_JOB_NAME"] = descriptor.job_name
        environment["SLURMBRIDGE_USER"] = descriptor.user_id
        environment["SLURMBRIDGE_KEY"] = key

        return WorkloadSpec(
            kind=kind,
            name=workload_name(descriptor.job_name, key),
            namespace=descriptor.namespace or self.config.default_namespace,
            image=image,
            limits=dict(resources),
            requests=dict(resources),
            restart_policy=self.config.restart_policy,
            replicas=descriptor.num_nodes,
            node_selector=dict(sorted(node_selector.items())),
            labels=labels,
            annotations={USER_ANNOTATION: descriptor.user_id},
            environment=environment,
            command=tuple(self.config.command or ()),
        )


def translate(descriptor: SubmissionDescriptor, config: TranslatorConfig) -> WorkloadSpec:
    """Functional shorthand for ``Translator(config).translate(descriptor)``."""
    return Translator(config).translate(descriptor)
