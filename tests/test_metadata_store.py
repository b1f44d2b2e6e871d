"""
Tests for the job row transitions of MetadataStore, with the asyncpg pool mocked.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from datasync.store.metadata_store import MetadataStore


@pytest.fixture
def pool():
    pool = Mock()
    pool.fetchrow = AsyncMock(return_value=None)
    pool.execute = AsyncMock(return_value="UPDATE 1")
    return pool


@pytest.fixture
def metadata(pool):
    return MetadataStore("postgresql://etl@db/platform", pool=pool)


class TestJobTransitions:

    @pytest.mark.asyncio
    async def test_claim_only_moves_pending_rows(self, metadata, pool):
        pool.fetchrow.return_value = {"id": "job-1"}

        assert await metadata.claim_job("job-1") is True

        sql, status, job_id = pool.fetchrow.await_args.args
        assert "WHERE id = $2 AND status = 'pending' RETURNING id" in sql
        assert (status, job_id) == ("running", "job-1")

    @pytest.mark.asyncio
    async def test_claim_of_finished_job_returns_false(self, metadata, pool):
        assert await metadata.claim_job("job-1") is False

    @pytest.mark.asyncio
    async def test_skip_never_overwrites_a_started_job(self, metadata, pool):
        await metadata.skip_job("job-1", "Dataset is locked by another sync")

        sql = pool.execute.await_args.args[0]
        assert sql.endswith("WHERE id = $3 AND status = 'pending'")
