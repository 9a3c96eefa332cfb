"""Unit tests for the PostgREST-style datastore adapter."""

import asyncio
import json

import httpx
import pytest
import respx

from officesync.config.settings import settings
from officesync.core.errors import ConfigurationError, StoreError
from officesync.core.models import ChangeType
from officesync.store.rest import RestStore, build_filters

BASE = "https://db.test"


def make_store(**kwargs):
    kwargs.setdefault("api_key", "anon-key")
    kwargs.setdefault("access_token", "user-token")
    return RestStore(base_url=BASE, poll_interval=0.01, **kwargs)


class TestBuildFilters:
    def test_operators(self):
        params = build_filters(
            eq={"space_id": "s1", "is_secret": False, "parent": None},
            is_null=["removed_at"],
            in_={"room_id": ["a", "b"]},
        )
        assert params == [
            ("space_id", "eq.s1"),
            ("is_secret", "eq.false"),
            ("parent", "is.null"),
            ("removed_at", "is.null"),
            ("room_id", 'in.("a","b")'),
        ]

    def test_empty(self):
        assert build_filters() == []


class TestRestStore:
    """Test the HTTP mapping of store operations."""

    def test_requires_url(self):
        with pytest.raises(ConfigurationError):
            RestStore(base_url="")

    @pytest.mark.asyncio
    async def test_select(self):
        with respx.mock(base_url=BASE) as router:
            route = router.get("/rest/v1/rooms").mock(return_value=httpx.Response(200, json=[{"id": "r1"}]))
            async with make_store() as store:
                rows = await store.select("rooms", eq={"space_id": "s1"}, order_by="name", limit=5)

        assert rows == [{"id": "r1"}]
        request = route.calls.last.request
        assert request.url.params["space_id"] == "eq.s1"
        assert request.url.params["order"] == "name.asc"
        assert request.url.params["limit"] == "5"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_error_status_becomes_store_error(self):
        with respx.mock(base_url=BASE) as router:
            router.get("/rest/v1/rooms").mock(
                return_value=httpx.Response(403, json={"message": "permission denied for table rooms"})
            )
            async with make_store() as store:
                with pytest.raises(StoreError) as exc_info:
                    await store.select("rooms")

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == {"message": "permission denied for table rooms"}

    @pytest.mark.asyncio
    async def test_writes(self):
        with respx.mock(base_url=BASE) as router:
            insert = router.post("/rest/v1/rooms").mock(
                return_value=httpx.Response(201, json=[{"id": "r9", "name": "Focus"}])
            )
            update = router.patch("/rest/v1/rooms").mock(return_value=httpx.Response(200, json=[{"id": "r9"}]))
            delete = router.delete("/rest/v1/rooms").mock(
                return_value=httpx.Response(200, json=[{"id": "r9"}, {"id": "r10"}])
            )
            async with make_store() as store:
                row = await store.insert("rooms", {"name": "Focus"})
                updated = await store.update("rooms", {"id": "r9"}, {"name": "Deep focus"})
                removed = await store.delete("rooms", {"space_id": "s1"})

        assert row["id"] == "r9"
        assert insert.calls.last.request.headers["Prefer"] == "return=representation"
        assert updated == [{"id": "r9"}]
        assert update.calls.last.request.url.params["id"] == "eq.r9"
        assert json.loads(update.calls.last.request.content) == {"name": "Deep focus"}
        assert removed == 2
        assert delete.calls.last.request.url.params["space_id"] == "eq.s1"

    @pytest.mark.asyncio
    async def test_rpc(self):
        with respx.mock(base_url=BASE) as router:
            route = router.post("/rest/v1/rpc/get_invite_info").mock(
                return_value=httpx.Response(200, json={"found": False})
            )
            async with make_store() as store:
                result = await store.rpc("get_invite_info", {"p_token": "abc"})

        assert result == {"found": False}
        assert json.loads(route.calls.last.request.content) == {"p_token": "abc"}

    @pytest.mark.asyncio
    async def test_current_principal(self):
        with respx.mock(base_url=BASE) as router:
            router.get("/auth/v1/user").mock(side_effect=[
                httpx.Response(200, json={"id": "u1", "email": "u1@test"}),
                httpx.Response(401, json={"msg": "expired"}),
            ])
            async with make_store() as store:
                principal = await store.current_principal()
                assert principal.id == "u1"
                assert await store.current_principal() is None

    @pytest.mark.asyncio
    async def test_signed_out_without_token(self):
        with respx.mock(base_url=BASE, assert_all_called=False) as router:
            route = router.get("/auth/v1/user")
            async with RestStore(base_url=BASE, api_key="anon-key", access_token="") as store:
                assert await store.current_principal() is None
        assert not route.called


class TestPollingSubscription:
    """Test the synthesized change feed."""

    @pytest.mark.asyncio
    async def test_diffs_rows(self):
        state = {"rows": [{"id": "r1", "name": "Lobby"}, {"id": "r2", "name": "Meeting"}]}
        events = []
        seen_three = asyncio.Event()

        def handler(event):
            events.append(event)
            if len(events) >= 3:
                seen_three.set()

        with respx.mock(base_url=BASE) as router:
            router.get("/rest/v1/rooms").mock(side_effect=lambda request: httpx.Response(200, json=state["rows"]))
            async with make_store() as store:
                sub = await store.subscribe("rooms", handler, eq={"space_id": "s1"})
                state["rows"] = [{"id": "r1", "name": "Reception"}, {"id": "r3", "name": "Focus"}]
                await asyncio.wait_for(seen_three.wait(), timeout=2)
                await sub.unsubscribe()

        by_type = {e.type: e for e in events}
        assert set(by_type) == {ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE}
        assert by_type[ChangeType.UPDATE].old_record["name"] == "Lobby"
        assert by_type[ChangeType.INSERT].record["id"] == "r3"
        assert by_type[ChangeType.DELETE].old_record["id"] == "r2"
        assert not sub.active

    @pytest.mark.asyncio
    async def test_survives_unreadable_poll_response(self):
        responses = iter([
            httpx.Response(200, json=[]),
            httpx.Response(200, text="<html>bad gateway</html>"),
        ])
        inserted = asyncio.Event()

        def rooms(request):
            return next(responses, httpx.Response(200, json=[{"id": "r1"}]))

        def handler(event):
            if event.type == ChangeType.INSERT and event.record["id"] == "r1":
                inserted.set()

        with respx.mock(base_url=BASE) as router:
            router.get("/rest/v1/rooms").mock(side_effect=rooms)
            async with make_store() as store:
                sub = await store.subscribe("rooms", handler)
                await asyncio.wait_for(inserted.wait(), timeout=2)
                assert not sub._task.done()
                await sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_the_feed(self):
        state = {"rows": []}
        received = []
        second = asyncio.Event()

        def handler(event):
            received.append(event.record["id"])
            if event.record["id"] == "r1":
                raise RuntimeError("consumer bug")
            second.set()

        with respx.mock(base_url=BASE) as router:
            router.get("/rest/v1/rooms").mock(side_effect=lambda request: httpx.Response(200, json=state["rows"]))
            async with make_store() as store:
                sub = await store.subscribe("rooms", handler)
                state["rows"] = [{"id": "r1"}]
                while not received:
                    await asyncio.sleep(0.01)
                state["rows"] = [{"id": "r1"}, {"id": "r2"}]
                await asyncio.wait_for(second.wait(), timeout=2)
                assert sub.active and not sub._task.done()
                await sub.unsubscribe()

        assert received == ["r1", "r2"]


class TestResponseHandling:
    """Test how HTTP-level failures map onto StoreError."""

    @pytest.mark.asyncio
    async def test_non_json_body_is_store_error(self):
        with respx.mock(base_url=BASE) as router:
            router.get("/rest/v1/rooms").mock(return_value=httpx.Response(200, text="<html>bad gateway</html>"))
            async with make_store() as store:
                with pytest.raises(StoreError) as exc_info:
                    await store.select("rooms")

        assert exc_info.value.status_code == 200
        assert "invalid JSON" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_errors_are_retried_up_to_ceiling(self):
        with respx.mock(base_url=BASE) as router:
            route = router.get("/rest/v1/rooms").mock(side_effect=httpx.ConnectError("refused"))
            async with make_store() as store:
                with pytest.raises(StoreError) as exc_info:
                    await store.select("rooms")

        assert route.call_count == settings.max_retries
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_protocol_errors_are_not_retried(self):
        with respx.mock(base_url=BASE) as router:
            route = router.get("/rest/v1/rooms").mock(side_effect=httpx.RemoteProtocolError("garbled"))
            async with make_store() as store:
                with pytest.raises(StoreError):
                    await store.select("rooms")

        assert route.call_count == 1
