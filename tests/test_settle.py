from unittest.mock import AsyncMock

import pytest

from obsidian_feishu_sync.core import settle
from obsidian_feishu_sync.core.settle import HISTORY_LIMIT, SettleClock


class TestSettleClock:
    @pytest.mark.asyncio
    async def test_waits_named_delay(self):
        sleeper = AsyncMock()
        clock = SettleClock(sleeper=sleeper)
        await clock.wait(settle.AFTER_DELETE)
        sleeper.assert_awaited_once_with(clock.delay_for(settle.AFTER_DELETE))
        assert clock.history == [settle.AFTER_DELETE]

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_sleep(self):
        sleeper = AsyncMock()
        clock = SettleClock(delays={settle.AFTER_DELETE: 0}, sleeper=sleeper)
        await clock.wait(settle.AFTER_DELETE)
        sleeper.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_name_rejected(self):
        with pytest.raises(KeyError):
            await SettleClock(sleeper=AsyncMock()).wait("never_defined")

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        """A long-lived clock only remembers its most recent waits."""
        clock = SettleClock(sleeper=AsyncMock())
        for _ in range(HISTORY_LIMIT * 40):
            await clock.wait(settle.BATCH_INTERVAL)
        await clock.wait(settle.AFTER_DELETE)
        assert len(clock.history) == HISTORY_LIMIT
        assert clock.history[-1] == settle.AFTER_DELETE

    def test_history_is_a_copy(self):
        clock = SettleClock(sleeper=AsyncMock())
        clock.history.append(settle.AFTER_DELETE)
        assert clock.history == []
