from __future__ import annotations
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str
    width: int = 1


class MathError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        offset: int = 0,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        # Horizontal caret shift, for errors that point just before/after a token.
        self.offset = offset
        self.rule = rule
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} at {self.location.file}:{self.location.line + 1}:{self.location.column + 1}"


class MathLexError(MathError):
    """Raised when the scanner meets an unrecognized character sequence."""


class MathParseError(MathError):
    """Raised when parsing fails."""


class MathInternalError(MathError):
    """Raised when an interpreter invariant is violated."""


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int
    line_text: str = ""
    file: str = "<string>"

    def location(self) -> SourceLocation:
        return SourceLocation(
            file=self.file,
            line=self.line,
            column=self.column,
            statement=self.line_text,
            width=max(len(self.value.rstrip("\n")), 1),
        )


# Order matters: the first pattern that matches at the current column wins.
TOKEN_TABLE: Sequence[Tuple[str, str]] = (
    ("LET", r"let\b"),
    ("CONST", r"const\b"),
    ("DEFINE", r"define\b"),
    ("WHERE", r"where\b"),
    ("EXTERNAL", r"external\b"),
    ("CACHE", r"cache\b"),
    ("COMMA", r","),
    ("PIPE", r"\|"),
    ("OPEN_PARENTHESIS", r"\("),
    ("CLOSE_PARENTHESIS", r"\)"),
    ("EQUALS", r"=="),
    ("NOT_EQUALS", r"=!"),
    ("BIGGER_OR_EQUALS", r">="),
    ("BIGGER", r">"),
    ("SMALLER_OR_EQUALS", r"<="),
    ("SMALLER", r"<"),
    ("ASSIGN", r"="),
    ("PLUS", r"\+"),
    ("MINUS", r"-"),
    ("DIVIDE", r"/"),
    ("MULTIPLY", r"\*"),
    ("POW", r"\^"),
    ("NUMBER", r"[0-9_]+"),
    ("WHITESPACE", r"\s+"),
    # A trailing '*' marks a reference; it only sticks when an argument or
    # parameter ends right after it, so `a*b` still lexes as a product.
    ("IDENTIFIER", r"[a-zA-Z][A-Za-z0-9_]*(?:\*(?=\s*[,)]))?"),
)

REFERENCE_SIGIL = "*"


class Lexer:
    def __init__(
        self,
        text: str,
        filename: str,
        *,
        comment: str = "#",
        table: Sequence[Tuple[str, str]] = TOKEN_TABLE,
    ) -> None:
        self.text = text
        self.filename = filename
        self.comment = comment
        self._patterns: List[Tuple[str, Pattern[str]]] = [(kind, re.compile(pattern)) for kind, pattern in table]

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        patterns = self._patterns
        filename = self.filename

        for line_no, raw in enumerate(self.text.splitlines()):
            content = raw.split(self.comment, 1)[0] if self.comment else raw
            index = 0
            n = len(content)
            while index < n:
                for kind, pattern in patterns:
                    match = pattern.match(content, index)
                    if match is None or match.end() == index:
                        continue
                    tokens_append(Token(kind, match.group(0), line_no, index, raw, filename))
                    index = match.end()
                    break
                else:
                    raise MathLexError(
                        f"Unrecognized token '{content[index]}'",
                        location=SourceLocation(filename, line_no, index, raw, 1),
                        rule="lex",
                    )
            tokens_append(Token("NEW_LINE", "\n", line_no, index, raw, filename))
        return tokens


def tokenize(text: str, filename: str = "<string>", *, comment: str = "#") -> List[Token]:
    return Lexer(text, filename, comment=comment).tokenize()


def format_diagnostic(error: MathError) -> str:
    """Render an error with the offending source line and a caret underline."""
    location = error.location
    if location is None:
        return f"{error.__class__.__name__}: {error.message}"
    gutter = str(location.line + 1)
    pad = " " * len(gutter)
    column = max(location.column + error.offset, 0)
    return "\n".join(
        [
            f"{error.__class__.__name__}: {error.message}",
            f"{pad} |",
            f"{gutter} |     {location.statement}",
            f"{pad} |     {' ' * column}{'^' * location.width} {error.message} [{location.file}]",
        ]
    )
