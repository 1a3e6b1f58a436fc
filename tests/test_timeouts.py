import asyncio

from mcp_agent_client.timeouts import TimeoutCoordinator


def test_request_expires_after_baseline_timeout() -> None:
    async def _run() -> None:
        coordinator = TimeoutCoordinator(timeout=0.02, extended_timeout=1.0)
        expired: list[int] = []
        coordinator.start(1, lambda: expired.append(1))
        assert 1 in coordinator

        await asyncio.sleep(0.06)
        assert expired == [1]
        assert 1 not in coordinator
        assert len(coordinator) == 0

    asyncio.run(_run())


def test_extend_resets_timer_instead_of_adding_time() -> None:
    async def _run() -> None:
        coordinator = TimeoutCoordinator(timeout=0.05, extended_timeout=0.1)
        expired: list[str] = []
        coordinator.start("a", lambda: expired.append("a"))

        for _ in range(5):
            await asyncio.sleep(0.04)
            assert coordinator.extend("a") is True
        assert expired == []
        assert coordinator.is_extended("a")

        await asyncio.sleep(0.15)
        assert expired == ["a"]
        assert coordinator.extend("a") is False

    asyncio.run(_run())


def test_extend_all_covers_every_outstanding_request() -> None:
    async def _run() -> None:
        coordinator = TimeoutCoordinator(timeout=0.03, extended_timeout=0.5)
        expired: list[int] = []
        coordinator.start(1, lambda: expired.append(1))
        coordinator.start(2, lambda: expired.append(2))

        assert coordinator.extend_all() == 2
        await asyncio.sleep(0.08)
        assert expired == []
        assert coordinator.is_extended(1) and coordinator.is_extended(2)
        coordinator.clear()
        assert len(coordinator) == 0

    asyncio.run(_run())


def test_finish_cancels_timer() -> None:
    async def _run() -> None:
        coordinator = TimeoutCoordinator(timeout=0.02, extended_timeout=0.5)
        expired: list[int] = []
        coordinator.start(7, lambda: expired.append(7))
        coordinator.finish(7)
        coordinator.finish(7)

        await asyncio.sleep(0.05)
        assert expired == []
        assert 7 not in coordinator

    asyncio.run(_run())
