# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Mock accounting API server for integration testing.

Uses shared contract models to validate payloads match the API.
Stores all updates in-memory for assertion in tests.
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from slurmbridge.contract import AccountingPayload, AccountingResponse

app = FastAPI()

# In-memory storage for assertions
jobs: dict[str, dict] = {}
events: list[dict] = []


def reset():
    """Clear all stored data between tests."""
    jobs.clear()
    events.clear()


@app.put("/api/jobs/{job_id}", response_model=AccountingResponse)
async def update_job(job_id: str, payload: AccountingPayload):
    """Record a terminal phase. Validates payload against shared contract."""
    update_data = payload.model_dump(exclude_none=True)
    jobs.setdefault(job_id, {}).update(update_data)
    events.append({"type": "update", "job_id": job_id, **update_data})
    return AccountingResponse(job_id=job_id, phase=payload.phase)


def create_test_client() -> TestClient:
    """Create a fresh TestClient with clean state."""
    reset()
    return TestClient(app)
