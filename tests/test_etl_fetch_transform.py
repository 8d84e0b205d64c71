"""
Tests for the S3 artifact fetcher and the local TSV -> SQL transform proxy.
"""

import httpx
import pytest

from fiscalismia.etl.datasets import DatasetName
from fiscalismia.etl.errors import ArtifactDownloadError, TransformProxyError, UnknownArtifactError
from fiscalismia.etl.fetcher import Artifact, ArtifactFetcher
from fiscalismia.etl.transform_proxy import LocalTransformProxy, count_insert_statements
from tests.helpers import RecordingProgressSink

LOCATION = "https://bucket.s3.amazonaws.com/transformed/2026-02-19-fixed_costs.tsv?X-Amz-Signature=secret"
BASE_URL = "http://localhost:3002/api/fiscalismia"
TSV = b"description\tmonthly_cost\nRent\t950.00\n"
SQL = (
    "INSERT INTO public.fixed_costs (description, monthly_cost) VALUES ('Rent', 950.00);\n"
    "INSERT INTO public.fixed_costs (description, monthly_cost) VALUES ('Power', 60.00);\n"
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestArtifactFetcher:
    @pytest.mark.asyncio
    async def test_fetch_returns_artifact_and_reports_size(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            return httpx.Response(200, content=TSV)

        progress = RecordingProgressSink()
        async with _client(handler) as client:
            artifact = await ArtifactFetcher(client).fetch(LOCATION, progress)

        assert artifact.dataset is DatasetName.FIXED_COSTS
        assert artifact.content == TSV
        assert artifact.size == len(TSV)
        assert len(progress.events) == 1
        assert "fixed_costs" in progress.messages[0]
        assert f"{len(TSV)} B" in progress.messages[0]

    @pytest.mark.asyncio
    async def test_unknown_dataset_fails_without_download(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=TSV)

        async with _client(handler) as client:
            with pytest.raises(UnknownArtifactError):
                await ArtifactFetcher(client).fetch(
                    "https://bucket.s3.amazonaws.com/transformed/foo_data.tsv",
                    RecordingProgressSink(),
                )

        assert calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, content=b""),
            httpx.Response(200, content=b"  \n"),
            httpx.Response(403, content=b"<Error>AccessDenied</Error>"),
            httpx.Response(404),
        ],
    )
    async def test_error_status_or_empty_body_is_fatal(self, response):
        progress = RecordingProgressSink()
        async with _client(lambda request: response) as client:
            with pytest.raises(ArtifactDownloadError) as exc_info:
                await ArtifactFetcher(client).fetch(LOCATION, progress)

        message = exc_info.value.message
        assert "2026-02-19-fixed_costs.tsv" in message
        assert "X-Amz-Signature" not in message
        assert progress.events == []

    @pytest.mark.asyncio
    async def test_transport_error_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(ArtifactDownloadError) as exc_info:
                await ArtifactFetcher(client, timeout=2.0).fetch(LOCATION, RecordingProgressSink())

        assert "timed out after 2.0s" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)


class TestLocalTransformProxy:
    def _artifact(self, dataset: DatasetName = DatasetName.FIXED_COSTS) -> Artifact:
        return Artifact(dataset=dataset, location=LOCATION, content=TSV)

    @pytest.mark.asyncio
    async def test_posts_tsv_with_forwarded_authorization(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=SQL)

        batches: dict[DatasetName, str] = {}
        progress = RecordingProgressSink()
        async with _client(handler) as client:
            result = await LocalTransformProxy(client, BASE_URL).transform(
                self._artifact(), "Bearer caller-token", batches, progress
            )

        assert result == SQL
        assert batches == {DatasetName.FIXED_COSTS: SQL}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/texttsv/fixed_costs"
        assert request.headers["Authorization"] == "Bearer caller-token"
        assert request.headers["Content-Type"] == "text/plain"
        assert request.content == TSV

    @pytest.mark.asyncio
    async def test_progress_reports_count_not_statements(self):
        progress = RecordingProgressSink()
        async with _client(lambda request: httpx.Response(200, text=SQL)) as client:
            await LocalTransformProxy(client, BASE_URL).transform(
                self._artifact(), "Bearer t", {}, progress
            )

        assert len(progress.events) == 1
        assert "Generated 2 INSERT statements for fixed_costs" in progress.messages[0]
        assert "Rent" not in progress.messages[0]

    @pytest.mark.asyncio
    async def test_later_batch_overwrites_earlier(self):
        batches = {DatasetName.FIXED_COSTS: "INSERT INTO old VALUES (1);"}
        async with _client(lambda request: httpx.Response(200, text=SQL)) as client:
            await LocalTransformProxy(client, BASE_URL).transform(
                self._artifact(), "Bearer t", batches, RecordingProgressSink()
            )

        assert batches[DatasetName.FIXED_COSTS] == SQL

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(400, text="Invalid TSV header"),
            httpx.Response(401, json={"error": "unauthorized"}),
            httpx.Response(201, text=SQL),
            httpx.Response(200, text=""),
        ],
    )
    async def test_anything_but_200_with_body_is_fatal(self, response):
        batches: dict[DatasetName, str] = {}
        async with _client(lambda request: response) as client:
            with pytest.raises(TransformProxyError) as exc_info:
                await LocalTransformProxy(client, BASE_URL).transform(
                    self._artifact(DatasetName.INCOME), "Bearer t", batches, RecordingProgressSink()
                )

        assert "/texttsv/income" in exc_info.value.message
        assert batches == {}

    @pytest.mark.asyncio
    async def test_transport_error_names_route(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransformProxyError) as exc_info:
                await LocalTransformProxy(client, BASE_URL).transform(
                    self._artifact(DatasetName.INVESTMENTS), "Bearer t", {}, RecordingProgressSink()
                )

        assert exc_info.value.route == f"{BASE_URL}/texttsv/investments"


def test_count_insert_statements_is_case_insensitive() -> None:
    assert count_insert_statements("insert into a values (1); INSERT  INTO b values (2);") == 2
    assert count_insert_statements("SELECT 1;") == 0
