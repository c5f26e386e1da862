# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Request payload models for the hook and accounting contracts."""

from pydantic import BaseModel, Field


class SubmissionPayload(BaseModel):
    """Job description handed to ``slurmbridge gate`` by the submit plugin."""

    job_name: str = Field(..., min_length=1, description="Slurm job name (--job-name)")
    user_id: str = Field(..., min_length=1, description="Submitting user (uid or login)")
    gres: str | None = Field(None, description="TRES/gres request, e.g. 'gres/gpu:a100:2'")
    image: str | None = Field(None, description="Container image or alias")
    namespace: str | None = Field(None, description="Target orchestration namespace")
    num_nodes: int = Field(1, ge=1, description="Requested node count (--nodes)")
    cpus_per_task: int | None = Field(None, ge=1, description="CPUs per task")
    memory_mb: int | None = Field(None, ge=1, description="Memory per node in MB")
    environment: dict[str, str] = Field(default_factory=dict, description="Job environment")
    cluster: str = Field("", description="Slurm cluster name")
    submission_id: str | None = Field(None, description="Token separating deliberate duplicate submissions")
    script: str = Field("", description="Original batch script")


class AccountingPayload(BaseModel):
    """Payload for PUT /api/jobs/{idempotency_key}."""

    job_name: str = Field(..., description="Slurm job name")
    phase: str = Field(..., description="Terminal bridge phase")
    updated_at: str = Field(..., description="ISO 8601 update timestamp")
    workload: str | None = Field(None, description="namespace/name of the workload object")
    message: str | None = Field(None, description="Human-readable outcome")
    attempts: int | None = Field(None, description="Dispatch attempts made")
