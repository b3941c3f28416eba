import asyncio
import pytest

from marketplace.services.connectivity import ConnectivityMonitor, ConnectivityState, NetworkGate


@pytest.fixture
def gate():
    return NetworkGate()


def test_gate_notifies_only_on_change(gate):
    seen = []
    remove = gate.add_listener(seen.append)

    gate.disable()
    gate.disable()
    gate.enable()
    remove()
    gate.disable()

    assert seen == [False, True]


def test_failing_gate_listener_does_not_block_others(gate):
    seen = []

    def broken(enabled):
        raise RuntimeError("boom")

    gate.add_listener(broken)
    gate.add_listener(seen.append)
    gate.disable()

    assert seen == [False]


@pytest.mark.asyncio
async def test_offline_disables_and_online_enables_at_once(gate):
    monitor = ConnectivityMonitor(gate, settle_delay=0.05)

    monitor.handle_offline()
    assert monitor.state == ConnectivityState.OFFLINE
    assert not gate.enabled

    monitor.handle_online()
    assert monitor.state == ConnectivityState.CONNECTED
    assert gate.enabled


@pytest.mark.asyncio
async def test_returning_from_background_waits_to_settle(gate):
    monitor = ConnectivityMonitor(gate, settle_delay=0.05)

    monitor.handle_visibility(False)
    assert monitor.state == ConnectivityState.BACKGROUND
    assert not gate.enabled

    monitor.handle_visibility(True)
    assert monitor.state == ConnectivityState.CONNECTED
    assert not gate.enabled

    await asyncio.sleep(0.1)
    assert gate.enabled


@pytest.mark.asyncio
async def test_hiding_again_cancels_the_pending_enable(gate):
    monitor = ConnectivityMonitor(gate, settle_delay=0.05)

    monitor.handle_visibility(False)
    monitor.handle_visibility(True)
    monitor.handle_visibility(False)
    await asyncio.sleep(0.1)

    assert monitor.state == ConnectivityState.BACKGROUND
    assert not gate.enabled


@pytest.mark.asyncio
async def test_offline_wins_over_visibility(gate):
    monitor = ConnectivityMonitor(gate, settle_delay=0.05)

    monitor.handle_offline()
    monitor.handle_visibility(False)
    assert monitor.state == ConnectivityState.OFFLINE

    monitor.handle_online()
    assert monitor.state == ConnectivityState.BACKGROUND
    assert not gate.enabled


@pytest.mark.asyncio
async def test_close_cancels_the_pending_enable(gate):
    monitor = ConnectivityMonitor(gate, settle_delay=0.05)
    monitor.handle_visibility(False)
    monitor.handle_visibility(True)

    monitor.close()
    await asyncio.sleep(0.1)

    assert not gate.enabled
