"""Size estimates that drive context truncation.

Estimates only decide which whole messages fit a model's window. They are
never reported as billed usage, so a rough rule is enough.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable

from canopy.models import Attachment

CHARS_PER_TOKEN = 4


class TokenCounter(ABC):
    @abstractmethod
    def count(self, text: str) -> int:
        ...

    def count_turn(self, content: str, attachments: Iterable[Attachment] = ()) -> int:
        """Text plus every attachment, each attachment counted by its payload."""
        # base64 inflates the payload by about 4/3; left in as headroom
        return self.count(content) + sum(self.count(att.raw_data) for att in attachments)


class ApproximateTokenCounter(TokenCounter):
    """Four characters per token, the usual figure for English prose."""

    def count(self, text: str) -> int:
        return len(text) // CHARS_PER_TOKEN
