"""
Token counting and usage tracking.

Holds the four token counters reported per request and their arithmetic.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenCounts:
    """Token counts for one event or an aggregate of events.

    All counts are non-negative integers; missing counts are recorded as 0.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def zero(cls) -> "TokenCounts":
        return cls()

    @property
    def total_tokens(self) -> int:
        """Total tokens across all four counters."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def io_tokens(self) -> int:
        """Input plus output tokens (cache traffic excluded)."""
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        if not isinstance(other, TokenCounts):
            return NotImplemented
        return TokenCounts(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )
