"""Tests for the shared subprocess pool."""

from __future__ import annotations

import asyncio
import logging
import sys

import pytest

from mcpwire.mcp.errors import ProcessSpawnError, TransportClosedError
from mcpwire.mcp.process_pool import ProcessPool, process_key

from conftest import FAKE_SERVER

ARGS = [str(FAKE_SERVER)]


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def test_process_key_is_deterministic_and_sorts_env() -> None:
    first = process_key("node", ["server.js", "--port", "1"], {"B": "2", "A": "1"})
    second = process_key("node", ["server.js", "--port", "1"], {"A": "1", "B": "2"})

    assert first == second
    assert first == "node::server.js|--port|1::A=1|B=2"
    assert process_key("node") == "node::::"


def test_process_key_distinguishes_args() -> None:
    assert process_key("node", ["a"]) != process_key("node", ["b"])


@pytest.mark.asyncio
async def test_acquire_shares_one_process_for_identical_configs() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        first = await pool.acquire("alpha", sys.executable, ARGS)
        second = await pool.acquire("beta", sys.executable, ARGS)

        assert first.pid == second.pid
        assert len(pool) == 1
        managed = first.process
        assert managed.reference_count == 2
        assert managed.referencing_servers == frozenset({"alpha", "beta"})

        await first.dispose()
        assert managed.alive
        assert managed.reference_count == 1

        await second.dispose()
        assert len(pool) == 0
        assert managed.terminated
        assert managed.process.returncode is not None
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_distinct_env_spawns_distinct_processes() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        first = await pool.acquire("alpha", sys.executable, ARGS, {"FAKE_ID": "1"})
        second = await pool.acquire("beta", sys.executable, ARGS, {"FAKE_ID": "2"})

        assert first.pid != second.pid
        assert len(pool) == 2
    finally:
        await pool.shutdown_all()
    assert len(pool) == 0


@pytest.mark.asyncio
async def test_double_dispose_warns_and_does_not_double_release(caplog: pytest.LogCaptureFixture) -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        first = await pool.acquire("alpha", sys.executable, ARGS)
        second = await pool.acquire("alpha", sys.executable, ARGS)
        managed = first.process

        await first.dispose()
        with caplog.at_level(logging.WARNING, logger="mcpwire.mcp.process_pool"):
            await first.dispose()

        assert "disposed twice" in caplog.text
        assert managed.reference_count == 1
        assert managed.alive
        assert not second.disposed
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_disposed_handle_cannot_reach_process() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        handle = await pool.acquire("alpha", sys.executable, ARGS)
        await handle.dispose()

        with pytest.raises(TransportClosedError):
            _ = handle.process
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_spawn_failure_raises_and_registers_nothing() -> None:
    pool = ProcessPool()

    with pytest.raises(ProcessSpawnError) as info:
        await pool.acquire("ghost", "/nonexistent/definitely-not-a-binary")

    assert info.value.command == "/nonexistent/definitely-not-a-binary"
    assert len(pool) == 0


@pytest.mark.asyncio
async def test_crashed_process_is_forgotten_and_respawned() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        handle = await pool.acquire("alpha", sys.executable, ARGS)
        key = handle.process_key
        old_pid = handle.pid
        handle.process.process.kill()

        await _wait_until(lambda: key not in pool)
        with pytest.raises(TransportClosedError):
            _ = handle.process

        fresh = await pool.acquire("alpha", sys.executable, ARGS)
        assert fresh.pid is not None
        assert fresh.pid != old_pid
        assert fresh.process.reference_count == 1

        # Releasing the stale handle must not touch the respawned process.
        await handle.dispose()
        assert fresh.process.alive
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_stdout_lines_fan_out_to_every_subscriber() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        handle = await pool.acquire("alpha", sys.executable, ARGS)
        process = handle.process
        seen_a: list[str | None] = []
        seen_b: list[str | None] = []
        process.subscribe(seen_a.append)
        unsubscribe_b = process.subscribe(seen_b.append)

        await process.write_line('{"jsonrpc":"2.0","id":"x","method":"tools/list","params":{}}')
        await _wait_until(lambda: bool(seen_a) and bool(seen_b))
        unsubscribe_b()

        assert '"id": "x"' in str(seen_a[0])
        assert seen_a[0] == seen_b[0]
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_request_ids_are_unique_per_process() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        first = await pool.acquire("alpha", sys.executable, ARGS)
        second = await pool.acquire("beta", sys.executable, ARGS)

        ids = [first.process.next_request_id(), second.process.next_request_id(), first.process.next_request_id()]

        assert ids == ["0", "1", "2"]
    finally:
        await pool.shutdown_all()


@pytest.mark.asyncio
async def test_stats_report_references() -> None:
    pool = ProcessPool(terminate_timeout=2.0)
    try:
        await pool.acquire("beta", sys.executable, ARGS)
        await pool.acquire("alpha", sys.executable, ARGS)

        (stats,) = pool.stats()

        assert stats.reference_count == 2
        assert stats.referencing_servers == ("alpha", "beta")
        assert stats.command == sys.executable
        assert stats.args == tuple(ARGS)
    finally:
        await pool.shutdown_all()
