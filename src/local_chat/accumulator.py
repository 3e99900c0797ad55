"""Per-turn generation state: text buffer, token count and timing."""

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class StreamAccumulator:
    """Running buffer for one generation.

    Written only by the generation loop and read once at finalization.
    """

    clock: Callable[[], float] = time.monotonic
    text: str = ""
    token_count: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def append(self, token: str) -> None:
        self.text += token
        self.token_count += 1

    def finish_at(self, text: str, consumed: bool = False) -> None:
        """Replace the buffer with the text kept at a stop sequence.

        Args:
            text: Text left after trimming the stop sequence.
            consumed: Count the halting token toward throughput.
        """
        self.text = text
        if consumed:
            self.token_count += 1

    def elapsed_seconds(self) -> float:
        return max(self.clock() - self.started_at, 0.0)

    def tokens_per_second(self, elapsed: float | None = None) -> float:
        """Token throughput; 0.0 when no time has elapsed."""
        if elapsed is None:
            elapsed = self.elapsed_seconds()
        if elapsed <= 0:
            return 0.0
        return self.token_count / elapsed
