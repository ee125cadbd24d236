from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class StepwiseError(Exception):
    """Base class for interpreter errors."""


class StepwiseParseError(StepwiseError):
    """Raised inside the parser to abandon a parse that cannot continue."""

    def __init__(self, code: str, message: str, *, start: Optional[int] = None, end: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.start = start
        self.end = end


@dataclass
class Token:
    type: str
    value: str
    start: int
    end: int


@dataclass
class Diagnostic:
    code: str
    message: str
    severity: str
    start: Optional[int] = None
    end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "start": self.start,
            "end": self.end,
        }


@dataclass
class LexResult:
    tokens: List[Token]
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)


DEFAULT_MAX_FILE_SIZE = 20000

KEYWORDS = {
    "let",
    "const",
    "if",
    "else",
    "while",
    "for",
    "true",
    "false",
    "null",
}

THREE_CHAR_OPERATORS = {"===", "!=="}

TWO_CHAR_OPERATORS = {"==", "!=", ">=", "<=", "&&", "||", "++", "--", "+=", "-=", "*=", "/="}

PUNCTUATION = set("+-*/%(){}[];,<>=!")

WHITESPACE = " \t\r\n"

DIGITS = set("0123456789")

IDENT_START = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_")

IDENT_PART = IDENT_START | DIGITS


class Lexer:
    def __init__(self, text: str, *, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
        self.text = text
        self.max_file_size = max_file_size
        self.index = 0
        self.errors: List[Diagnostic] = []
        self.warnings: List[Diagnostic] = []

    def tokenize(self) -> LexResult:
        text = self.text
        n = len(text)
        if n > self.max_file_size:
            self.errors.append(
                Diagnostic(
                    "file-too-large",
                    f"File too large: {n} characters exceeds limit of {self.max_file_size}",
                    "error",
                    0,
                    n,
                )
            )
            return LexResult(tokens=[], errors=self.errors, warnings=self.warnings, stats={"size": n, "tokens": 0})

        tokens: List[Token] = []
        tokens_append = tokens.append
        while self.index < n:
            ch = text[self.index]
            if ch in WHITESPACE:
                self.index += 1
                continue
            if ch == "/" and self._peek(1) == "/":
                self._consume_line_comment()
                continue
            if ch == "/" and self._peek(1) == "*":
                self._consume_block_comment()
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in IDENT_START:
                tokens_append(self._consume_identifier())
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            start = self.index
            three = text[start:start + 3]
            if three in THREE_CHAR_OPERATORS:
                self.index += 3
                tokens_append(Token("Punct", three, start, self.index))
                continue
            two = text[start:start + 2]
            if two in TWO_CHAR_OPERATORS:
                self.index += 2
                tokens_append(Token("Punct", two, start, self.index))
                continue
            if ch in PUNCTUATION:
                self.index += 1
                tokens_append(Token("Punct", ch, start, self.index))
                continue
            self.errors.append(Diagnostic("unknown-token", f"Unknown token: {ch}", "error", start, start + 1))
            self.index += 1
        return LexResult(
            tokens=tokens,
            errors=self.errors,
            warnings=self.warnings,
            stats={"size": n, "tokens": len(tokens)},
        )

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        self.index += 2
        while self.index < n and text[self.index] != "\n":
            self.index += 1

    def _consume_block_comment(self) -> None:
        start = self.index
        close = self.text.find("*/", start + 2)
        if close == -1:
            self.warnings.append(
                Diagnostic("unterminated-comment", "Unterminated block comment", "warning", start, len(self.text))
            )
            self.index = len(self.text)
            return
        self.index = close + 2

    def _consume_number(self) -> Token:
        start = self.index
        self._consume_digits()
        # A radix point only belongs to the literal when digits follow it.
        if self._peek() == "." and self._peek(1) in DIGITS:
            self.index += 1
            self._consume_digits()
        return Token("Number", self.text[start:self.index], start, self.index)

    def _consume_digits(self) -> None:
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in DIGITS:
            self.index += 1

    def _consume_identifier(self) -> Token:
        start = self.index
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in IDENT_PART:
            self.index += 1
        value = text[start:self.index]
        token_type = "Keyword" if value in KEYWORDS else "Identifier"
        return Token(token_type, value, start, self.index)

    def _consume_string(self) -> Token:
        start = self.index
        text = self.text
        n = len(text)
        quote = text[start]
        self.index += 1
        chars: List[str] = []
        while self.index < n:
            ch = text[self.index]
            if ch == quote:
                self.index += 1
                return Token("String", "".join(chars), start, self.index)
            if ch == "\\" and self.index + 1 < n:
                # Escapes are kept verbatim, backslash included.
                chars.append(text[self.index:self.index + 2])
                self.index += 2
                continue
            chars.append(ch)
            self.index += 1
        self.warnings.append(
            Diagnostic("unterminated-string", "Unterminated string literal", "warning", start, n)
        )
        return Token("String", "".join(chars), start, n)

    def _peek(self, offset: int = 0) -> Optional[str]:
        idx = self.index + offset
        if idx >= len(self.text):
            return None
        return self.text[idx]


def tokenize(source: str, *, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> LexResult:
    return Lexer(source, max_file_size=max_file_size).tokenize()
