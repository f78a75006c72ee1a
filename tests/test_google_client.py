"""
tests/test_google_client.py — Google Client Retry & Error Mapping Tests
========================================================================

Uses ``httpx.MockTransport`` so no network is touched; ``sleep`` is
replaced to keep backoff instant.
"""

from __future__ import annotations

import httpx
import pytest

from troupesync.errors import ProviderUnavailable, SourceMalformed, SourceUnreachable
from troupesync.sources.google import GoogleClient


def make_client(handler, **kwargs) -> tuple[GoogleClient, list[float]]:
    delays: list[float] = []
    client = GoogleClient(
        token="test-token",
        transport=httpx.MockTransport(handler),
        sleep=delays.append,
        **kwargs,
    )
    return client, delays


class TestRetries:
    def test_retries_server_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"formId": "f1"})

        client, delays = make_client(handler, max_retries=3, backoff=0.1)
        with client:
            assert client.get_form("f1") == {"formId": "f1"}
        assert len(calls) == 3
        assert len(delays) == 2
        assert delays[1] >= delays[0]

    def test_rate_limit_retried(self):
        statuses = iter([429, 200])

        def handler(request):
            status = next(statuses)
            return httpx.Response(status, json={} if status == 200 else None)

        client, delays = make_client(handler)
        assert client.get_json("https://example.test/x") == {}
        assert len(delays) == 1

    def test_transport_errors_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ConnectError("boom", request=request)
            return httpx.Response(200, text="a,b\n1,2\n")

        client, _ = make_client(handler)
        assert client.export_sheet_csv("s1") == "a,b\n1,2\n"

    def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client, delays = make_client(handler, max_retries=2)
        with pytest.raises(ProviderUnavailable):
            client.get_form("f1")
        assert len(calls) == 3
        assert len(delays) == 2


class TestErrorMapping:
    @pytest.mark.parametrize("status", [403, 404, 410])
    def test_gone_statuses_not_retried(self, status):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status)

        client, delays = make_client(handler)
        with pytest.raises(SourceUnreachable):
            client.get_form("f1")
        assert len(calls) == 1
        assert delays == []

    def test_rejected_credentials_abort_without_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        client, delays = make_client(handler)
        with pytest.raises(ProviderUnavailable):
            client.export_sheet_csv("s1")
        assert len(calls) == 1
        assert delays == []

    def test_other_client_errors_are_malformed(self):
        client, _ = make_client(lambda request: httpx.Response(400))
        with pytest.raises(SourceMalformed):
            client.get_form("f1")

    def test_invalid_json_is_malformed(self):
        client, _ = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(SourceMalformed):
            client.get_form("f1")

    def test_non_object_json_is_malformed(self):
        client, _ = make_client(lambda request: httpx.Response(200, json=[1, 2]))
        with pytest.raises(SourceMalformed):
            client.get_form("f1")


class TestPaging:
    def test_folder_listing_follows_page_tokens(self):
        def handler(request):
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"files": [{"id": "b"}]})
            assert "'root-folder' in parents" in request.url.params["q"]
            return httpx.Response(200, json={"files": [{"id": "a"}], "nextPageToken": "p2"})

        client, _ = make_client(handler)
        assert [f["id"] for f in client.list_folder("root-folder")] == ["a", "b"]

    def test_form_responses_follow_page_tokens(self):
        def handler(request):
            if request.url.params.get("pageToken") == "next":
                return httpx.Response(200, json={"responses": [{"responseId": "r2"}]})
            return httpx.Response(
                200, json={"responses": [{"responseId": "r1"}], "nextPageToken": "next"}
            )

        client, _ = make_client(handler)
        assert [r["responseId"] for r in client.list_form_responses("f1")] == ["r1", "r2"]

    def test_bearer_token_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={})

        client, _ = make_client(handler)
        client.get_form("f1")
        assert seen["auth"] == "Bearer test-token"
