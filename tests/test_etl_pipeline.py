"""
End-to-end tests for the raw data ETL pipeline.

The real trigger, fetcher and transform proxy run against an
httpx.MockTransport that plays API Gateway, S3 and the /texttsv routes; the
ingestion engine runs against a fake psycopg connection.
"""

from __future__ import annotations

import httpx
import pytest
from psycopg import errors as pg_errors

from fiscalismia.core.config import Settings, get_settings
from fiscalismia.etl.datasets import DatasetName
from fiscalismia.etl.ingestion import IngestionEngine
from fiscalismia.etl.pipeline import EtlRunGuard, RawDataEtlPipeline, build_pipeline
from fiscalismia.etl.progress import ProgressLevel
from tests.helpers import FakeAsyncConnection, RecordingProgressSink, make_connect

S3 = "https://fiscalismia-raw-data-etl-storage.s3.amazonaws.com/transformed/2026-02-19_19-57-01"
SIGNATURE = "?X-Amz-Expires=300&X-Amz-Signature=4685c342"
CALLER_AUTH = "Bearer caller-token"


def presigned(name: str) -> str:
    return f"{S3}-{name}.tsv{SIGNATURE}"


ALL_URLS = [presigned(dataset.value) for dataset in DatasetName]


class FakeUpstream:
    """MockTransport handler for API Gateway, S3 and the local /texttsv routes."""

    def __init__(self, urls: list[str], gateway_status: int = 202):
        self.urls = urls
        self.gateway_status = gateway_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "gateway.example.test":
            return httpx.Response(self.gateway_status, json={"presigned_urls": self.urls})
        if request.url.host.endswith("s3.amazonaws.com"):
            return httpx.Response(200, content=b"col_a\tcol_b\nx\t1\n")
        if request.url.path.startswith("/api/fiscalismia/texttsv/"):
            dataset = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, text=f"INSERT INTO {dataset} VALUES (1);\n")
        return httpx.Response(404)

    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]

    def transform_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/texttsv/" in r.url.path]


async def run_pipeline(
    upstream: FakeUpstream,
    conn: FakeAsyncConnection | None = None,
    settings: Settings | None = None,
    engine: IngestionEngine | None = None,
):
    connect = make_connect(conn)
    progress = RecordingProgressSink()
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        pipeline = build_pipeline(
            client,
            settings or get_settings(),
            engine=engine or IngestionEngine(connect),
        )
        summary = await pipeline.run(progress, CALLER_AUTH)
    return summary, progress, connect


class TestRawDataEtlPipeline:
    @pytest.mark.asyncio
    async def test_successful_run_streams_progress_and_summary(self):
        upstream = FakeUpstream(ALL_URLS)

        summary, progress, connect = await run_pipeline(upstream)

        assert summary is not None
        assert summary["fixed_costs"] == 4
        assert summary["investments"] == {"investments": 6, "bridge": 1, "taxes": 2, "dividends": 3}
        assert progress.closed
        assert progress.final_payload == summary
        assert progress.errors == []
        assert progress.events[-1][1] is ProgressLevel.SUCCESS
        assert connect.conn.committed

    @pytest.mark.asyncio
    async def test_artifacts_are_processed_in_trigger_order(self):
        upstream = FakeUpstream(list(reversed(ALL_URLS)))

        await run_pipeline(upstream)

        routes = [r.url.path.rsplit("/", 1)[-1] for r in upstream.transform_requests()]
        assert routes == [dataset.value for dataset in reversed(list(DatasetName))]

    @pytest.mark.asyncio
    async def test_caller_authorization_is_forwarded_to_transform(self):
        upstream = FakeUpstream(ALL_URLS)

        await run_pipeline(upstream)

        transform_requests = upstream.transform_requests()
        assert len(transform_requests) == 5
        assert all(r.headers["Authorization"] == CALLER_AUTH for r in transform_requests)
        gateway = next(r for r in upstream.requests if r.url.host == "gateway.example.test")
        assert gateway.headers["Authorization"] != CALLER_AUTH

    @pytest.mark.asyncio
    async def test_unknown_artifact_stops_run_before_ingestion(self):
        upstream = FakeUpstream([presigned("fixed_costs"), presigned("foo_data")])

        summary, progress, connect = await run_pipeline(upstream)

        assert summary is None
        assert len(progress.errors) == 1
        assert "foo_data" in progress.errors[0]
        assert progress.events[-1][1] is ProgressLevel.ERROR
        assert any("fixed_costs" in m and "S3" in m for m in progress.messages)
        assert any("INSERT statements for fixed_costs" in m for m in progress.messages)
        assert progress.closed and progress.final_payload is None
        assert connect.acquired == 0
        # foo_data was never downloaded
        assert sum(host.endswith("s3.amazonaws.com") for host in upstream.hosts()) == 1

    @pytest.mark.asyncio
    async def test_missing_gateway_secret_makes_no_network_call(self):
        upstream = FakeUpstream(ALL_URLS)
        settings = Settings(API_GW_SECRET_KEY="")

        summary, progress, connect = await run_pipeline(upstream, settings=settings)

        assert summary is None
        assert upstream.requests == []
        assert len(progress.errors) == 1
        assert "API_GW_SECRET_KEY" in progress.errors[0]
        assert progress.closed

    @pytest.mark.asyncio
    async def test_gateway_failure_is_reported_once(self):
        upstream = FakeUpstream(ALL_URLS, gateway_status=500)

        summary, progress, _ = await run_pipeline(upstream)

        assert summary is None
        assert len(progress.errors) == 1
        assert progress.errors[0].startswith("API Gateway invocation failed.")
        assert upstream.hosts() == ["gateway.example.test"]

    @pytest.mark.asyncio
    async def test_incomplete_batch_set_never_opens_transaction(self):
        upstream = FakeUpstream([presigned(d.value) for d in DatasetName if d is not DatasetName.INCOME])

        summary, progress, connect = await run_pipeline(upstream)

        assert summary is None
        assert "income" in progress.errors[0]
        assert connect.acquired == 0

    @pytest.mark.asyncio
    async def test_rollback_is_never_reported_as_success(self):
        conn = FakeAsyncConnection(
            failures={"INSERT INTO investments": pg_errors.ForeignKeyViolation("Key (id)=(1) is not present")}
        )

        summary, progress, _ = await run_pipeline(FakeUpstream(ALL_URLS), conn=conn)

        assert summary is None
        assert progress.errors == ["Foreign Key violation: Key (id)=(1) is not present"]
        assert all(level is not ProgressLevel.SUCCESS or "API Gateway" in message for message, level in progress.events)
        assert conn.rolled_back and not conn.committed
        assert progress.final_payload is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_reported_as_error(self):
        class ExplodingEngine(IngestionEngine):
            async def ingest(self, batches, progress=None):
                raise KeyError("boom")

        summary, progress, _ = await run_pipeline(FakeUpstream(ALL_URLS), engine=ExplodingEngine())

        assert summary is None
        assert len(progress.errors) == 1
        assert "KeyError" in progress.errors[0]
        assert progress.closed and progress.close_calls == 1


class TestEtlRunGuard:
    def test_only_one_holder_at_a_time(self):
        guard = EtlRunGuard()
        assert guard.try_acquire()
        assert guard.active
        assert not guard.try_acquire()
        guard.release()
        assert not guard.active
        assert guard.try_acquire()


def test_pipeline_exposes_its_stages() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(FakeUpstream(ALL_URLS)))
    pipeline = build_pipeline(client, get_settings())

    assert isinstance(pipeline, RawDataEtlPipeline)
    assert pipeline.trigger.endpoint == (
        "https://gateway.example.test/api/fiscalismia/post/raw_data_etl/invoke_lambda/return_tsv_file_urls"
    )
    assert pipeline.proxy.base_url == "http://localhost:3002/api/fiscalismia"
    assert pipeline.fetcher.timeout == 10.0
    assert pipeline.proxy.timeout == 30.0
