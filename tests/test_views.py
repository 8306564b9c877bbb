"""Tests for ViewSubscriptions (call-site subscription coordination)."""

from unittest.mock import MagicMock

import pytest

from beads_live.errors import ConnectionLostError
from beads_live.state import AppState, AppStore, Filters
from beads_live.subscriptions import SubscriptionManager
from beads_live.types import QuerySpec
from beads_live.views import ViewSubscriptions

BOARD_KEYS = {
    "tab:board:ready",
    "tab:board:in-progress",
    "tab:board:closed",
    "tab:board:blocked",
}


@pytest.fixture
def app_store():
    return AppStore()


@pytest.fixture
def manager(transport, registry):
    return SubscriptionManager(transport.send, membership=registry)


@pytest.fixture
def on_error():
    return MagicMock()


@pytest.fixture
def views(manager, registry, app_store, on_error):
    return ViewSubscriptions(manager, registry, app_store, on_error=on_error)


def subscribed(transport):
    return [p["id"] for kind, p in transport.calls if kind == "subscribe-list"]


def unsubscribed(transport):
    return [p["id"] for kind, p in transport.calls if kind == "unsubscribe-list"]


class TestIssuesView:
    @pytest.mark.asyncio
    async def test_subscribes_issues_tab(self, views, transport, manager):
        await views.ensure()
        assert transport.calls == [
            ("subscribe-list", {"id": "tab:issues", "spec": {"type": "all-issues"}})
        ]
        assert views.owned_keys == {"tab:issues"}

    @pytest.mark.asyncio
    async def test_store_registered_before_subscribe(self, views, transport, registry):
        registered = []
        transport.on_call = lambda kind, payload: registered.append(payload["id"] in registry)
        await views.ensure()
        assert registered == [True]

    @pytest.mark.asyncio
    async def test_repeat_ensure_is_quiet(self, views, transport):
        await views.ensure()
        await views.ensure()
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_local_filter_change_does_not_resubscribe(self, views, transport):
        await views.ensure()
        await views.ensure(AppState(filters=Filters(search="crash", client=("acme",))))
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_status_change_resubscribes(self, views, transport, registry):
        await views.ensure()
        await views.ensure(AppState(filters=Filters(status="closed")))
        assert transport.kinds() == ["subscribe-list", "unsubscribe-list", "subscribe-list"]
        assert transport.calls[-1][1]["spec"] == {"type": "closed-issues"}
        assert registry.get_store("tab:issues").spec == QuerySpec("closed-issues")


class TestViewSwitch:
    @pytest.mark.asyncio
    async def test_board_replaces_issues(self, views, transport, registry):
        await views.ensure()
        await views.ensure(AppState(view="board"))

        assert unsubscribed(transport) == ["tab:issues"]
        assert set(subscribed(transport)[1:]) == BOARD_KEYS
        assert "tab:issues" not in registry
        assert views.owned_keys == BOARD_KEYS
        assert all(key in registry for key in BOARD_KEYS)

    @pytest.mark.asyncio
    async def test_release_precedes_new_subscriptions(self, views, transport):
        await views.ensure(AppState(view="board"))
        await views.ensure(AppState(view="epics"))
        kinds = transport.kinds()[4:]
        assert kinds == ["unsubscribe-list"] * 4 + ["subscribe-list"]
        assert subscribed(transport)[-1] == "tab:epics"

    @pytest.mark.asyncio
    async def test_selected_issue_adds_detail(self, views, transport):
        await views.ensure(AppState(selected_id="UI-7"))
        assert ("subscribe-list", {"id": "detail:UI-7", "spec": {"type": "issue-detail", "params": {"id": "UI-7"}}}) in transport.calls

        await views.ensure(AppState(selected_id=None))
        assert unsubscribed(transport) == ["detail:UI-7"]
        assert views.owned_keys == {"tab:issues"}


class TestEpics:
    @pytest.mark.asyncio
    async def test_toggle_epic(self, views, app_store, transport, registry):
        app_store.set_state(view="epics")
        await views.ensure()

        assert await views.toggle_epic("E-1") is True
        assert "detail:E-1" in registry
        assert subscribed(transport) == ["tab:epics", "detail:E-1"]

        assert await views.toggle_epic("E-1") is False
        assert "detail:E-1" not in registry
        assert unsubscribed(transport) == ["detail:E-1"]

    @pytest.mark.asyncio
    async def test_leaving_epics_releases_details(self, views, app_store, transport):
        app_store.set_state(view="epics")
        await views.toggle_epic("E-1")
        await views.ensure(AppState(view="issues"))
        assert set(unsubscribed(transport)) == {"tab:epics", "detail:E-1"}


class TestErrors:
    @pytest.mark.asyncio
    async def test_subscribe_failure_reported(self, views, transport, on_error):
        error = ConnectionLostError("down")
        transport.errors["subscribe-list"] = [error]
        await views.ensure()
        on_error.assert_called_once_with(error, "tab:issues")

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self, manager, registry, app_store, transport):
        views = ViewSubscriptions(
            manager, registry, app_store, on_error=MagicMock(side_effect=RuntimeError("x"))
        )
        transport.errors["subscribe-list"] = [ConnectionLostError("down")]
        await views.ensure()

    @pytest.mark.asyncio
    async def test_next_ensure_tries_again(self, views, transport, manager):
        transport.errors["subscribe-list"] = [ConnectionLostError("down")]
        await views.ensure()
        await views.ensure()
        assert manager.status("tab:issues") is not None
        assert len(transport.calls) == 2


class TestClearAndResubscribe:
    @pytest.mark.asyncio
    async def test_drops_everything_and_rebuilds(self, views, app_store, transport, registry):
        app_store.set_state(view="epics")
        await views.toggle_epic("E-1")
        registry.apply_push(
            {"key": "tab:epics", "kind": "snapshot", "items": [{"id": "E-1"}]}
        )

        await views.clear_and_resubscribe()

        assert set(unsubscribed(transport)) == {"tab:epics", "detail:E-1"}
        assert subscribed(transport)[-1] == "tab:epics"
        assert registry.snapshot_for("tab:epics") == []
        assert views.expanded_epics == set()
        assert views.owned_keys == {"tab:epics"}

    @pytest.mark.asyncio
    async def test_close_releases_all(self, views, transport, registry):
        await views.ensure(AppState(view="board", selected_id="UI-1"))
        await views.close()
        assert len(unsubscribed(transport)) == 5
        assert registry.keys() == []
