from __future__ import annotations
from typing import List


class RASMError(Exception):
    """Base class for interpreter errors."""


class RASMParseError(RASMError):
    """Raised when parsing fails."""


SEPARATORS = " \t"


class Lexer:
    """Splits a single instruction line into whitespace separated tokens.

    Double quotes toggle a "quoted" state in which separators are kept as part
    of the current token. Quotes are not balanced-checked: a stray quote keeps
    the rest of the line inside one token.
    """

    def __init__(self, line: str) -> None:
        self.text = line

    def tokenize(self) -> List[str]:
        tokens: List[str] = []
        tokens_append = tokens.append
        chars: List[str] = []
        in_quotes = False

        for ch in self.text:
            if ch == '"':
                in_quotes = not in_quotes
            if ch in SEPARATORS and not in_quotes:
                if chars:
                    tokens_append("".join(chars))
                    chars = []
                continue
            chars.append(ch)
        if chars:
            tokens_append("".join(chars))
        return tokens


def split_line(line: str) -> List[str]:
    return Lexer(line).tokenize()
