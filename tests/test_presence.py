"""
Tests for the presence reconciler.

Snapshots come from a scripted fetcher; emitted events are collected by an
AsyncMock so both order and payloads can be checked.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from palbridge.exceptions import PalworldAPIError
from palbridge.players import PlayerDirectory
from palbridge.presence import PLAYER_CONNECTED, PLAYER_DISCONNECTED, PresenceReconciler


def _player(game_id: str) -> dict:
    return {"userId": game_id, "name": f"name_{game_id}", "playerId": f"pid_{game_id}"}


class ScriptedFetcher:
    """Returns one scripted snapshot per call; exceptions are raised."""

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)

    async def __call__(self):
        snapshot = self.snapshots.pop(0)
        if isinstance(snapshot, Exception):
            raise snapshot
        return [_player(game_id) for game_id in snapshot]


class RawFetcher:
    """Returns scripted snapshots as-is and stops the reconciler after the last one."""

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.calls = 0
        self.reconciler = None

    async def __call__(self):
        self.calls += 1
        if len(self.snapshots) == 1:
            self.reconciler.stop()
        return self.snapshots.pop(0)


def _reconciler(*snapshots):
    directory = PlayerDirectory()
    emit = AsyncMock()
    return PresenceReconciler(directory, ScriptedFetcher(*snapshots), emit), directory, emit


class TestPresenceReconciler:
    """Snapshot diffing into connect/disconnect events."""

    @pytest.mark.asyncio
    async def test_first_poll_only_sets_baseline(self):
        reconciler, directory, emit = _reconciler(["A", "B"])

        assert await reconciler.poll() == []
        emit.assert_not_awaited()
        assert reconciler.last_known == {"A", "B"}
        assert len(directory) == 2

    @pytest.mark.asyncio
    async def test_connects_and_disconnects(self):
        reconciler, _, emit = _reconciler(["A", "B"], ["B", "C"])
        await reconciler.poll()

        events = await reconciler.poll()

        assert events == [(PLAYER_CONNECTED, "C"), (PLAYER_DISCONNECTED, "A")]
        assert emit.await_count == 2
        event_type, data = emit.await_args_list[0].args
        assert event_type == PLAYER_CONNECTED
        assert data["player"]["gameId"] == "C"
        assert data["player"]["name"] == "name_C"
        assert reconciler.last_known == {"B", "C"}

    @pytest.mark.asyncio
    async def test_unchanged_snapshot_emits_nothing(self):
        reconciler, _, emit = _reconciler(["A"], ["A"])
        await reconciler.poll()
        await reconciler.poll()
        emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_known_set(self):
        reconciler, _, emit = _reconciler(["A"], PalworldAPIError("down"), [])
        await reconciler.poll()

        assert await reconciler.poll() == []
        assert reconciler.last_known == {"A"}

        assert await reconciler.poll() == [(PLAYER_DISCONNECTED, "A")]

    @pytest.mark.asyncio
    async def test_reset_makes_next_poll_silent(self):
        reconciler, _, emit = _reconciler(["A"], ["B"])
        await reconciler.poll()
        reconciler.reset()

        assert not reconciler.has_baseline
        assert await reconciler.poll() == []
        emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_without_directory_entry_is_dropped(self):
        directory = PlayerDirectory()
        emit = AsyncMock()
        reconciler = PresenceReconciler(directory, ScriptedFetcher(), emit)
        reconciler.diff(set())

        reconciler.diff({"ghost"})
        assert await reconciler._emit(PLAYER_CONNECTED, "ghost") is False
        emit.assert_not_awaited()

    def test_diff(self):
        reconciler = PresenceReconciler(PlayerDirectory(), ScriptedFetcher(), AsyncMock())

        assert reconciler.diff({"A", "B"}) == (set(), set())
        assert reconciler.diff({"B", "C"}) == ({"C"}, {"A"})


class TestMalformedSnapshots:
    """Bad entries and failing iterations never stop polling."""

    @pytest.mark.asyncio
    async def test_non_dict_entries_are_skipped(self):
        entry = _player("A")
        fetcher = RawFetcher([entry], [None, entry, "garbage"])
        reconciler = PresenceReconciler(PlayerDirectory(), fetcher, AsyncMock())

        await reconciler.poll()
        assert await reconciler.poll() == []
        assert reconciler.last_known == {"A"}

    @pytest.mark.asyncio
    async def test_null_user_id_is_not_a_player(self):
        fetcher = RawFetcher([], [{"userId": None, "name": "Ghost"}])
        reconciler = PresenceReconciler(PlayerDirectory(), fetcher, AsyncMock())

        await reconciler.poll()
        assert await reconciler.poll() == []
        assert reconciler.last_known == set()

    @pytest.mark.asyncio
    async def test_run_keeps_polling_after_bad_snapshot(self):
        entry = _player("A")
        fetcher = RawFetcher([entry], [None], [entry])
        emit = AsyncMock()
        reconciler = PresenceReconciler(PlayerDirectory(), fetcher, emit, interval=0)
        fetcher.reconciler = reconciler

        await asyncio.wait_for(reconciler.run(), timeout=1.0)

        assert fetcher.calls == 3
        assert [call.args[0] for call in emit.await_args_list] == [PLAYER_DISCONNECTED, PLAYER_CONNECTED]

    @pytest.mark.asyncio
    async def test_run_survives_failing_event_sink(self):
        entry = _player("A")
        fetcher = RawFetcher([], [entry], [])
        emit = AsyncMock(side_effect=[RuntimeError("sink down"), None])
        reconciler = PresenceReconciler(PlayerDirectory(), fetcher, emit, interval=0)
        fetcher.reconciler = reconciler

        await asyncio.wait_for(reconciler.run(), timeout=1.0)

        assert fetcher.calls == 3
        assert emit.await_args_list[-1].args[0] == PLAYER_DISCONNECTED
