from __future__ import annotations
from typing import Iterable, List, Optional

from lexer import MathInternalError, Token


class TokenCursor:
    """Position-tracked token sequence used by every parsing stage."""

    def __init__(self, tokens: Optional[Iterable[Token]] = None) -> None:
        self.tokens: List[Token] = list(tokens) if tokens is not None else []
        self.index = 0

    def peek(self) -> Token:
        """Return the token under the cursor and move past it."""
        token = self.current()
        self.index += 1
        return token

    def current(self) -> Token:
        if self.is_empty():
            raise MathInternalError("Token cursor out of bounds", rule="cursor")
        return self.tokens[self.index]

    def previous(self) -> Optional[Token]:
        if self.index == 0 or not self.tokens:
            return None
        return self.tokens[min(self.index, len(self.tokens)) - 1]

    def advance(self) -> None:
        self.index += 1

    def retreat(self) -> None:
        if self.index == 0:
            raise MathInternalError("Cannot retreat before the first token", rule="cursor")
        self.index -= 1

    def is_empty(self) -> bool:
        return self.index >= len(self.tokens)

    def remaining(self) -> int:
        return max(len(self.tokens) - self.index, 0)

    def append(self, token: Token) -> None:
        self.tokens.append(token)

    def extend(self, other: "TokenCursor") -> None:
        self.tokens.extend(other.tokens)

    def extend_remaining(self, other: "TokenCursor") -> None:
        self.tokens.extend(other.tokens[other.index :])

    def remove_all(self, token_type: str) -> None:
        # Only meaningful before consumption starts; the cursor is not rebased.
        self.tokens = [token for token in self.tokens if token.type != token_type]

    def __len__(self) -> int:
        return len(self.tokens)
