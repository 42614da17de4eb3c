"""Tests for prometheus_agent.memory: sliding-window transcript."""

import pytest

from prometheus_agent.config import MemoryConfig
from prometheus_agent.memory import MemoryStore, estimate_tokens
from prometheus_agent.models import Turn


def _fill(memory: MemoryStore, count: int, start: int = 1) -> None:
    for i in range(start, start + count):
        memory.record(f"cmd-{i}", f"out-{i}", success=True)


@pytest.fixture
def memory():
    return MemoryStore("Fix the build: tests fail on CI", task_id="t-1", agent_id="a-1")


class TestTokenEstimate:

    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_record_accumulates_tokens(self, memory):
        memory.record("ls", "a" * 40, success=True)
        memory.record("pwd", "/app", success=True)
        assert memory.total_tokens == (1 + 10) + (1 + 1)


class TestCompression:
    """First-F / last-L window."""

    @pytest.mark.parametrize("count", [0, 1, 3, 5])
    def test_small_history_is_untouched(self, memory, count):
        _fill(memory, count)
        result = memory.compress()
        assert result.compression_ratio == 1.0
        assert len(memory.turns) == count
        assert memory.is_compressed is False

    def test_thirteen_turns(self, memory):
        _fill(memory, 13)
        result = memory.compress()

        assert len(memory.turns) == 5
        assert result.compression_ratio == 2.6
        assert result.total_original_turns == 13
        assert [t.action for t in result.first_turns] == ["cmd-1", "cmd-2"]
        assert [t.action for t in result.last_turns] == ["cmd-11", "cmd-12", "cmd-13"]
        assert memory.omitted_count == 8

    def test_ratio_is_rounded_to_two_decimals(self, memory):
        _fill(memory, 7)
        assert memory.compress().compression_ratio == 1.4

    def test_auto_compress_past_max_turns(self):
        memory = MemoryStore("goal", config=MemoryConfig(max_turns=10))
        _fill(memory, 10)
        assert memory.is_compressed is False

        memory.record("cmd-11", "out", success=True)
        assert memory.is_compressed is True
        assert len(memory.turns) == 5
        assert memory.compression_ratio == 2.2

    def test_repeated_compression_counts_every_turn(self, memory):
        _fill(memory, 13)
        memory.compress()
        _fill(memory, 3, start=14)
        memory.compress()

        assert memory.total_turns == 16
        assert memory.compression_ratio == 3.2
        assert [t.action for t in memory.turns] == ["cmd-1", "cmd-2", "cmd-14", "cmd-15", "cmd-16"]

    def test_compress_twice_keeps_ratio(self, memory):
        _fill(memory, 13)
        memory.compress()
        again = memory.compress()
        assert again.compression_ratio == 2.6

    def test_tokens_recomputed_after_compression(self, memory):
        _fill(memory, 13)
        memory.compress()
        assert memory.total_tokens == sum(t.token_count for t in memory.turns)

    def test_custom_window(self):
        memory = MemoryStore("goal", config=MemoryConfig(keep_first=1, keep_last=1))
        _fill(memory, 6)
        result = memory.compress()
        assert len(memory.turns) == 2
        assert result.compression_ratio == 3.0


class TestRenderContext:

    def test_no_turns(self, memory):
        text = memory.render_context()
        assert text.startswith("Global Goal: Fix the build: tests fail on CI")
        assert "No actions taken yet" in text

    def test_uncompressed_lists_every_turn(self, memory):
        memory.record("ls -la", "README.md", success=True)
        memory.record("make test", "boom", success=False)
        text = memory.render_context()

        assert "===== ACTION HISTORY =====" in text
        assert "Step 1: ls -la -> SUCCESS" in text
        assert "Step 2: make test -> ERROR" in text
        assert "README.md" in text
        assert "omitted" not in text

    def test_compressed_shows_omitted_marker(self, memory):
        _fill(memory, 13)
        memory.compress()
        text = memory.render_context()

        assert "===== INITIAL STEPS =====" in text
        assert "[... 8 turns omitted ...]" in text
        assert "===== RECENT STEPS =====" in text
        assert "Step 2: cmd-2" in text
        assert "Step 11: cmd-11" in text
        assert "Step 13: cmd-13" in text
        assert "cmd-5 " not in text

    def test_appends_after_auto_compression(self):
        memory = MemoryStore("goal", config=MemoryConfig(max_turns=50))
        _fill(memory, 51)
        assert memory.omitted_count == 46

        _fill(memory, 2, start=52)
        text = memory.render_context()

        assert len(memory.turns) == 7
        assert memory.omitted_count == 46
        assert "[... 46 turns omitted ...]" in text
        assert "Step 1: cmd-1 -> SUCCESS" in text
        assert "Step 2: cmd-2 -> SUCCESS" in text
        assert "Step 49: cmd-49 -> SUCCESS" in text
        assert "Step 53: cmd-53 -> SUCCESS" in text
        assert "cmd-48 " not in text
        assert "Step 54" not in text

    def test_render_after_repeated_compression(self, memory):
        _fill(memory, 13)
        memory.compress()
        _fill(memory, 3, start=14)
        memory.compress()
        text = memory.render_context()

        assert "[... 11 turns omitted ...]" in text
        assert "Step 14: cmd-14 -> SUCCESS" in text
        assert "Step 16: cmd-16 -> SUCCESS" in text
        assert "cmd-13 " not in text

    def test_long_output_truncated(self, memory):
        memory.record("cat big.log", "x" * 800, success=True)
        text = memory.render_context()
        assert "x" * 500 in text
        assert "x" * 501 not in text
        assert "... (output truncated)" in text

    def test_empty_output(self, memory):
        memory.record("touch a", "", success=True)
        assert "(empty output)" in memory.render_context()

    def test_append_raw_turn(self, memory):
        memory.append(Turn(action="echo hi", outcome="success", output="hi", token_count=3))
        assert memory.total_tokens == 3
        assert "Step 1: echo hi -> SUCCESS" in memory.render_context()


class TestStats:

    def test_stats(self, memory):
        _fill(memory, 13)
        memory.compress()
        stats = memory.stats()
        assert stats["task_id"] == "t-1"
        assert stats["turns"] == 5
        assert stats["total_turns"] == 13
        assert stats["is_compressed"] is True
        assert stats["compression_ratio"] == 2.6
