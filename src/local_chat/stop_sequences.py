"""Stop sequence matching for streamed generations."""

from typing import NamedTuple


class StopCheck(NamedTuple):
    """Outcome of feeding one token to the matcher.

    ``text`` is the accumulated text to keep. When generation continues
    the token has *not* been appended; the caller does that.
    """

    should_continue: bool
    text: str


class StopSequenceMatcher:
    """Decides whether a generation must halt on a new token.

    Stop sequences are checked in their configured order and the first
    one that matches wins.
    """

    def __init__(self, stop_sequences: list[str] | tuple[str, ...]) -> None:
        self.stop_sequences = tuple(s for s in stop_sequences if s)

    def check(self, token: str, text: str) -> StopCheck:
        """Check *token* against the stop sequences.

        Args:
            token: The newly generated token.
            text: Message text accumulated before this token.

        Returns:
            ``StopCheck(True, text)`` to keep going. On a halt, the text
            is either unchanged (token equals a stop sequence and is
            dropped) or has the token appended and the trailing stop
            sequence trimmed.
        """
        for stop in self.stop_sequences:
            if token == stop:
                return StopCheck(False, text)

            candidate = text + token
            if candidate.endswith(stop):
                # A text made of nothing but the stop sequence is left intact.
                if len(candidate) > len(stop):
                    candidate = candidate[: -len(stop)]
                return StopCheck(False, candidate)

        return StopCheck(True, text)
