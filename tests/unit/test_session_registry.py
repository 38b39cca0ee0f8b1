"""
Unit Tests for Session Registry and Safety Keywords
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from carecall.domain.services.safety_keywords import SafetyMonitor, detect_safety_tier
from carecall.domain.services.session_registry import SessionRegistry


def live_session():
    session = MagicMock()
    session.inject_system_message = AsyncMock(return_value=True)
    session.close = AsyncMock()
    return session


class TestSessionRegistry:
    """Tests for SessionRegistry"""

    @pytest.mark.asyncio
    async def test_singleton(self):
        """Test get_instance returns the same registry"""
        first = await SessionRegistry.get_instance()
        second = await SessionRegistry.get_instance()

        assert first is second

    def test_register_and_unregister(self):
        """Test basic bookkeeping"""
        registry = SessionRegistry()
        session = live_session()

        registry.register("sess-1", session)

        assert registry.get("sess-1") is session
        assert registry.active_count() == 1
        assert registry.unregister("sess-1", session)
        assert registry.active_count() == 0

    def test_stale_handle_cannot_evict_newer_session(self):
        """Test unregister with an old handle leaves the new one"""
        registry = SessionRegistry()
        old, new = live_session(), live_session()
        registry.register("sess-1", old)
        registry.register("sess-1", new)

        assert not registry.unregister("sess-1", old)
        assert registry.get("sess-1") is new

    @pytest.mark.asyncio
    async def test_inject_routes_to_session(self):
        """Test control messages reach the registered session"""
        registry = SessionRegistry()
        session = live_session()
        registry.register("sess-1", session)

        assert await registry.inject_system_message("sess-1", "Wrap up")
        session.inject_system_message.assert_awaited_once_with("Wrap up")
        assert not await registry.inject_system_message("sess-2", "Wrap up")

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self):
        """Test shutdown closes sessions even when one fails"""
        registry = SessionRegistry()
        broken, healthy = live_session(), live_session()
        broken.close.side_effect = RuntimeError("socket gone")
        registry.register("sess-1", broken)
        registry.register("sess-2", healthy)

        await registry.shutdown()

        healthy.close.assert_awaited_once()
        assert registry.active_count() == 0


class TestSafetyKeywords:
    """Tests for the keyword backstop"""

    @pytest.mark.parametrize("transcript,tier", [
        ("Sometimes I think I'd be better off dead", "high"),
        ("I feel so hopeless lately", "medium"),
        ("I'm so lonely since Frank passed", "low"),
        ("Quiero morir", "high"),
    ])
    def test_tiers(self, transcript, tier):
        """Test phrases map to their tier"""
        assert detect_safety_tier(transcript)[0] == tier

    def test_highest_tier_wins(self):
        """Test a transcript matching several tiers reports the worst"""
        assert detect_safety_tier("I'm all alone and I want to die")[0] == "high"

    def test_curly_apostrophe_normalized(self):
        """Test typographic apostrophes still match"""
        assert detect_safety_tier("I don’t want to live")[0] == "high"

    def test_no_match(self):
        """Test ordinary conversation"""
        assert detect_safety_tier("The garden looks lovely this morning") is None
        assert detect_safety_tier("") is None

    def test_monitor_reports_tier_once(self):
        """Test per-call de-duplication by tier"""
        monitor = SafetyMonitor()

        assert monitor.check("so lonely") == ("low", "so lonely")
        assert monitor.check("all alone") is None
        assert monitor.check("hopeless")[0] == "medium"
