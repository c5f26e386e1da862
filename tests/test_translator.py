# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for gres parsing, idempotency keys and translation."""

import pytest

from slurmbridge.core.errors import MissingImageError, TranslationError, UnsupportedResourceError
from slurmbridge.core.identity import (
    IDEMPOTENCY_KEY_LABEL,
    MANAGED_BY_LABEL,
    idempotency_key,
    workload_name,
)
from slurmbridge.core.models import GresRequest, SubmissionDescriptor, WorkloadKind
from slurmbridge.core.schema import ResourceMapping
from slurmbridge.core.translator import Translator, translate

from fake_control_plane import translator_config


def descriptor(**overrides) -> SubmissionDescriptor:
    values = {
        "job_name": "ai-training-job",
        "user_id": "alice",
        "gres": (GresRequest("gpu", 2),),
        "image": "quay.io/myrepo/ml-image:latest",
    }
    values.update(overrides)
    return SubmissionDescriptor(**values)


# ============================================================================
# GresRequest
# ============================================================================


class TestGresParsing:
    """Test GresRequest.parse() and parse_many()."""

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("gpu", GresRequest("gpu", 1)),
            ("gpu:2", GresRequest("gpu", 2)),
            ("gpu:a100:4", GresRequest("gpu", 4, "a100")),
            ("gpu:a100", GresRequest("gpu", 1, "a100")),
            ("gres/gpu:a100=2", GresRequest("gpu", 2, "a100")),
            ("gres:gpu:8", GresRequest("gpu", 8)),
        ],
    )
    def test_parses_slurm_spellings(self, token, expected):
        """All common gres/TRES spellings are understood."""
        assert GresRequest.parse(token) == expected

    @pytest.mark.parametrize("token", ["", ":2", "gpu:a100:", "gpu:0", "gpu:a:b:c", "gpu:a100:2=3"])
    def test_rejects_malformed_tokens(self, token):
        """Malformed tokens raise ValueError."""
        with pytest.raises(ValueError):
            GresRequest.parse(token)

    def test_parse_many_splits_on_commas(self):
        """Comma separated requests parse in order."""
        result = GresRequest.parse_many("gpu:2,nic:1")

        assert result == (GresRequest("gpu", 2), GresRequest("nic", 1))

    def test_parse_many_empty(self):
        """None and empty strings mean no gres."""
        assert GresRequest.parse_many(None) == ()
        assert GresRequest.parse_many("") == ()


# ============================================================================
# Identity
# ============================================================================


class TestIdempotencyKey:
    """Test idempotency_key() and workload_name()."""

    def test_same_identity_same_key(self):
        """Fields outside the identity do not change the key."""
        a = descriptor(image="one:1")
        b = descriptor(image="two:2", gres=(GresRequest("gpu", 8),))

        assert idempotency_key(a) == idempotency_key(b)

    def test_different_submission_id_different_key(self):
        """A new submission token yields a new key."""
        a = descriptor(submission_id="1")
        b = descriptor(submission_id="2")

        assert idempotency_key(a) != idempotency_key(b)

    def test_key_is_16_hex_chars(self):
        key = idempotency_key(descriptor())

        assert len(key) == 16
        int(key, 16)

    def test_workload_name_is_dns_safe(self):
        """Names are lowercase, <= 63 chars, and end with the key prefix."""
        key = "0123456789abcdef"
        name = workload_name("My_Job.Name" * 10, key)

        assert len(name) <= 63
        assert name == name.lower()
        assert name.endswith("-0123456789")
        assert name[0].isalpha()

    def test_workload_name_prefixes_non_alpha(self):
        """Names that would start with a digit get a 'job-' prefix."""
        assert workload_name("123", "abcdef0123456789") == "job-123-abcdef0123"
        assert workload_name("___", "abcdef0123456789") == "job-abcdef0123"


# ============================================================================
# Translator
# ============================================================================


class TestTranslate:
    """Test Translator.translate()."""

    def test_basic_batch_job(self):
        """Single-node GPU request becomes a batch job with GPU limits."""
        spec = translate(descriptor(), translator_config())

        assert spec.kind is WorkloadKind.BATCH_JOB
        assert spec.namespace == "slurm-jobs"
        assert spec.image == "quay.io/myrepo/ml-image:latest"
        assert spec.limits == {"nvidia.com/gpu": "2"}
        assert spec.requests == spec.limits
        assert spec.restart_policy == "Never"
        assert spec.replicas == 1

    def test_is_deterministic(self):
        """Equal inputs give byte-identical specs."""
        config = translator_config()

        first = translate(descriptor(), config)
        second = translate(descriptor(), config)

        assert first == second
        assert first.canonical_json() == second.canonical_json()
        assert first.spec_hash() == second.spec_hash()

    def test_labels_carry_key(self):
        """Objects are labelled with the manager and the idempotency key."""
        d = descriptor()
        spec = translate(d, translator_config(labels={"team": "ml"}))

        assert spec.labels[MANAGED_BY_LABEL] == "slurmbridge"
        assert spec.labels[IDEMPOTENCY_KEY_LABEL] == idempotency_key(d)
        assert spec.labels["team"] == "ml"
        assert spec.name == workload_name(d.job_name, idempotency_key(d))

    def test_sums_repeated_resources(self):
        """Counts of the same resource add up."""
        d = descriptor(gres=(GresRequest("gpu", 2), GresRequest("gpu", 1)))

        spec = translate(d, translator_config())

        assert spec.limits == {"nvidia.com/gpu": "3"}

    def test_cpu_and_memory(self):
        """CPU and memory requests are included."""
        spec = translate(descriptor(cpus_per_task=8, memory_mb=32768), translator_config())

        assert spec.limits == {"nvidia.com/gpu": "2", "cpu": "8", "memory": "32768Mi"}

    def test_gres_type_becomes_node_selector(self):
        """Typed requests pin the node type through the mapping's node label."""
        config = translator_config(
            resource_map={
                "gpu": ResourceMapping(
                    resource_name="nvidia.com/gpu",
                    node_label="nvidia.com/gpu.product",
                    types={"a100": "NVIDIA-A100-SXM4-80GB"},
                )
            }
        )

        spec = translate(descriptor(gres=(GresRequest("gpu", 2, "a100"),)), config)

        assert spec.node_selector == {"nvidia.com/gpu.product": "NVIDIA-A100-SXM4-80GB"}

    def test_conflicting_types_rejected(self):
        config = translator_config(
            resource_map={"gpu": ResourceMapping(resource_name="nvidia.com/gpu", node_label="gpu.product")}
        )
        d = descriptor(gres=(GresRequest("gpu", 1, "a100"), GresRequest("gpu", 1, "h100")))

        with pytest.raises(TranslationError):
            translate(d, config)

    def test_unsupported_resource(self):
        """Unmapped gres raise UnsupportedResourceError."""
        d = descriptor(gres=(GresRequest("gpu", 1), GresRequest("fpga", 1)))

        with pytest.raises(UnsupportedResourceError) as exc_info:
            translate(d, translator_config())

        assert exc_info.value.resource == "fpga"

    def test_missing_image(self):
        """No image and no default raises MissingImageError."""
        with pytest.raises(MissingImageError):
            translate(descriptor(image=None), translator_config())

    def test_default_image_and_alias(self):
        """Default image applies, and aliases are expanded."""
        config = translator_config(default_image="pytorch", images={"pytorch": "nvcr.io/nvidia/pytorch:24.01-py3"})

        spec = translate(descriptor(image=None), config)

        assert spec.image == "nvcr.io/nvidia/pytorch:24.01-py3"

    def test_multi_node_is_distributed(self):
        """More than one node becomes a distributed-training workload."""
        spec = translate(descriptor(num_nodes=4), translator_config())

        assert spec.kind is WorkloadKind.DISTRIBUTED_TRAINING
        assert spec.replicas == 4

    def test_multi_node_without_distributed_kind(self):
        spec = translate(descriptor(num_nodes=2), translator_config(distributed_kind_enabled=False))

        assert spec.kind is WorkloadKind.BATCH_JOB
        assert spec.replicas == 2

    def test_environment_passthrough(self):
        """Only listed variables are passed through."""
        d = descriptor(environment={"WANDB_PROJECT": "p", "SECRET": "s"})

        spec = translate(d, translator_config(env_passthrough=["WANDB_PROJECT"]))

        assert spec.environment["WANDB_PROJECT"] == "p"
        assert "SECRET" not in spec.environment
        assert spec.environment["SLURMBRIDGE_JOB_NAME"] == "ai-training-job"
        assert spec.environment["SLURMBRIDGE_USER"] == "alice"

    def test_namespace_override(self):
        spec = translate(descriptor(namespace="team-a"), translator_config())

        assert spec.namespace == "team-a"


class TestRecognizes:
    """Test Translator.recognizes()."""

    def test_mapped_gres(self):
        assert Translator(translator_config()).recognizes(descriptor()) is True

    def test_no_gres(self):
        assert Translator(translator_config()).recognizes(descriptor(gres=())) is False

    def test_unmapped_gres_only(self):
        assert Translator(translator_config()).recognizes(descriptor(gres=(GresRequest("license"),))) is False
