"""Per-task conversational memory with sliding-window compression.

A task's transcript is an append-only list of Turns. Once it grows past
`max_turns` it is compressed to the first F and last L turns: the opening
steps keep the task framing, the closing steps keep current state. Rendering
marks how many turns were dropped in between.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from prometheus_agent.config import MemoryConfig
from prometheus_agent.models import TURN_ERROR, TURN_SUCCESS, Turn

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN)) if text else 0


@dataclass
class CompressedMemory:
    """Derived first/last view over the transcript."""

    first_turns: list[Turn] = field(default_factory=list)
    last_turns: list[Turn] = field(default_factory=list)
    compression_ratio: float = 1.0
    total_original_turns: int = 0


class MemoryStore:
    """Transcript for one task execution. Not shared across tasks."""

    def __init__(
        self,
        global_goal: str,
        *,
        agent_id: str | None = None,
        task_id: str | None = None,
        config: MemoryConfig | None = None,
    ):
        config = config or MemoryConfig()
        self.global_goal = global_goal
        self.agent_id = agent_id
        self.task_id = task_id
        self.max_turns = config.max_turns
        self.keep_first = config.keep_first
        self.keep_last = config.keep_last
        self.preview_chars = config.output_preview_chars

        self._turns: list[Turn] = []
        self._dropped = 0  # turns removed by earlier compressions
        self.total_tokens = 0
        self.is_compressed = False
        self.compression_ratio = 1.0
        self.compressed: CompressedMemory | None = None

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def total_turns(self) -> int:
        """Every turn ever appended, including those compressed away."""
        return self._dropped + len(self._turns)

    def append(self, turn: Turn) -> None:
        """Add a turn; compress automatically past `max_turns`."""
        self._turns.append(turn)
        self.total_tokens = sum(t.token_count for t in self._turns)
        if len(self._turns) > self.max_turns:
            self.compress()

    def record(self, action: str, output: str, success: bool) -> Turn:
        """Build a Turn from an action and its outcome, append it, return it."""
        turn = Turn(
            action=action,
            outcome=TURN_SUCCESS if success else TURN_ERROR,
            output=output,
            token_count=estimate_tokens(action) + estimate_tokens(output),
        )
        self.append(turn)
        return turn

    def compress(self) -> CompressedMemory:
        """Keep the first F and last L turns.

        No-op (ratio 1.0) when the transcript already fits in F+L.
        """
        total = self.total_turns
        kept = self.keep_first + self.keep_last
        if len(self._turns) <= kept and self.compressed is not None:
            return self.compressed
        if total <= kept or len(self._turns) <= kept:
            return CompressedMemory(
                first_turns=list(self._turns),
                last_turns=[],
                compression_ratio=1.0,
                total_original_turns=total,
            )

        first = self._turns[: self.keep_first]
        last = self._turns[-self.keep_last:] if self.keep_last else []
        self._dropped += len(self._turns) - len(first) - len(last)
        self._turns = [*first, *last]
        self.total_tokens = sum(t.token_count for t in self._turns)
        self.compression_ratio = round(total / kept, 2)
        self.is_compressed = True
        self.compressed = CompressedMemory(
            first_turns=list(first),
            last_turns=list(last),
            compression_ratio=self.compression_ratio,
            total_original_turns=total,
        )
        logger.info(f"Memory compressed for task {self.task_id}: ratio {self.compression_ratio}x")
        return self.compressed

    @property
    def omitted_count(self) -> int:
        """Turns shown as omitted: floor((ratio - 1) * (F + L))."""
        if not self.is_compressed or self.compression_ratio <= 1:
            return 0
        # absorb float noise before floor()
        return math.floor(round((self.compression_ratio - 1) * (self.keep_first + self.keep_last), 6))

    def _format_turn(self, number: int, turn: Turn) -> str:
        output = turn.output or "(empty output)"
        if len(output) > self.preview_chars:
            output = output[: self.preview_chars] + "\n... (output truncated)"
        label = "SUCCESS" if turn.succeeded else "ERROR"
        return f"Step {number}: {turn.action} -> {label}\n```\n{output}\n```"

    def render_context(self) -> str:
        """Human-readable transcript for the next prompt."""
        lines = [f"Global Goal: {self.global_goal}", ""]
        if not self._turns:
            lines.append("No actions taken yet. The project code is in the working directory.")
            return "\n".join(lines)

        if not self.is_compressed:
            lines.append("===== ACTION HISTORY =====")
            lines.extend(self._format_turn(i + 1, t) for i, t in enumerate(self._turns))
            return "\n".join(lines)

        first = self._turns[: self.keep_first]
        last = self._turns[self.keep_first:]
        lines.append("===== INITIAL STEPS =====")
        lines.extend(self._format_turn(i + 1, t) for i, t in enumerate(first))
        lines.append("")
        lines.append(f"[... {self.omitted_count} turns omitted ...]")
        lines.append("")
        lines.append("===== RECENT STEPS =====")
        start = self.total_turns - len(last)
        lines.extend(self._format_turn(start + i + 1, t) for i, t in enumerate(last))
        return "\n".join(lines)

    def stats(self) -> dict:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "turns": len(self._turns),
            "total_turns": self.total_turns,
            "total_tokens": self.total_tokens,
            "is_compressed": self.is_compressed,
            "compression_ratio": self.compression_ratio,
        }
