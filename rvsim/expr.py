"""Tokenizer and evaluator for debugger expressions."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from .bits import DWORD_MASK, WORD_MASK

logger = logging.getLogger(__name__)

MAX_TOKENS = 32


class ExprError(Exception):
    """Raised when an expression cannot be tokenized or evaluated."""


class TokenType(enum.Enum):
    PLUS = "+"
    MINUS = "-"
    STAR = "*"
    SLASH = "/"
    LPAREN = "("
    RPAREN = ")"
    EQ = "=="
    NEQ = "!="
    AND = "&&"
    HEX = "hex"
    NUM = "num"
    REG = "reg"
    DEREF = "deref"


@dataclass(frozen=True)
class Token:
    type: TokenType
    text: str


# Tried in order; the first rule matching at the current position wins.
_RULES: tuple[tuple[re.Pattern, Optional[TokenType]], ...] = (
    (re.compile(r" +"), None),
    (re.compile(r"\+"), TokenType.PLUS),
    (re.compile(r"=="), TokenType.EQ),
    (re.compile(r"-"), TokenType.MINUS),
    (re.compile(r"\*"), TokenType.STAR),
    (re.compile(r"/"), TokenType.SLASH),
    (re.compile(r"\("), TokenType.LPAREN),
    (re.compile(r"\)"), TokenType.RPAREN),
    (re.compile(r"0x[0-9A-Fa-f]+"), TokenType.HEX),
    (re.compile(r"[0-9]+"), TokenType.NUM),
    (re.compile(r"!="), TokenType.NEQ),
    (re.compile(r"&&"), TokenType.AND),
    (re.compile(r"\$0|ra|sp|gp|tp|pc"), TokenType.REG),
    (re.compile(r"s1[0,1]|t[0-6]|s[0-9]|a[0-7]"), TokenType.REG),
)

# Lower numbers split first, so they bind loosest.
_PRIORITY = {
    TokenType.EQ: 1,
    TokenType.NEQ: 1,
    TokenType.PLUS: 2,
    TokenType.MINUS: 2,
    TokenType.STAR: 3,
    TokenType.SLASH: 3,
    TokenType.AND: 4,
    TokenType.REG: 5,
    TokenType.DEREF: 6,
}


def tokenize(text: str) -> list[Token]:
    """Split ``text`` into tokens, dropping spaces."""
    tokens: list[Token] = []
    position = 0
    while position < len(text):
        for index, (rule, token_type) in enumerate(_RULES):
            match = rule.match(text, position)
            if match is None:
                continue
            lexeme = match.group()
            logger.debug('match rules[%d] = "%s" at position %d with len %d: %s',
                         index, rule.pattern, position, len(lexeme), lexeme)
            position = match.end()
            if token_type is not None:
                tokens.append(Token(token_type, lexeme))
            break
        else:
            raise ExprError(f"no match at position {position}\n{text}\n{' ' * position}^")
    return tokens


class _Evaluator:
    def __init__(self, tokens: list[Token],
                 reg_lookup: Optional[Callable[[str], int]],
                 mem_read: Optional[Callable[[int], int]]) -> None:
        self.tokens = tokens
        self.reg_lookup = reg_lookup
        self.mem_read = mem_read

    def leaf(self, token: Token) -> int:
        if token.type is TokenType.HEX:
            return int(token.text, 16) & DWORD_MASK
        if token.type is TokenType.NUM:
            return int(token.text) & DWORD_MASK
        if token.type is TokenType.REG:
            if self.reg_lookup is None:
                return 0
            try:
                return self.reg_lookup(token.text) & DWORD_MASK
            except KeyError:
                return 0
        raise ExprError(f"unexpected token '{token.text}'")

    def parenthesized(self, p: int, q: int) -> bool:
        if self.tokens[p].type is not TokenType.LPAREN or self.tokens[q].type is not TokenType.RPAREN:
            return False
        depth = 1
        for token in self.tokens[p + 1:q]:
            if token.type is TokenType.LPAREN:
                depth += 1
            elif token.type is TokenType.RPAREN:
                depth -= 1
            if depth == 0:
                return False
        if depth != 1:
            raise ExprError("bad parentheses!")
        return True

    def main_operator(self, p: int, q: int) -> Optional[int]:
        op = None
        level = 100
        depth = 0
        for i, token in enumerate(self.tokens[p:q + 1], start=p):
            if token.type is TokenType.LPAREN:
                depth += 1
                continue
            if depth and token.type is TokenType.RPAREN:
                depth -= 1
                continue
            if depth:
                continue
            prio = _PRIORITY.get(token.type)
            if prio is None:
                continue
            # Comparisons keep the leftmost, the others take the rightmost.
            if level > prio or (level == prio and prio != 1):
                op, level = i, prio
        return op

    def eval(self, p: int, q: int) -> int:
        if p > q:
            return 0
        if p == q:
            return self.leaf(self.tokens[p])
        if self.parenthesized(p, q):
            return self.eval(p + 1, q - 1)
        op = self.main_operator(p, q)
        if op is None:
            raise ExprError("no operator in expression")
        val1 = self.eval(p, op - 1)
        val2 = self.eval(op + 1, q)
        optype = self.tokens[op].type
        if optype is TokenType.PLUS:
            return (val1 + val2) & DWORD_MASK
        if optype is TokenType.MINUS:
            return (val1 - val2) & DWORD_MASK
        if optype is TokenType.STAR:
            return (val1 * val2) & DWORD_MASK
        if optype is TokenType.SLASH:
            if val2 == 0:
                raise ExprError("division by zero")
            return val1 // val2
        if optype is TokenType.EQ:
            return int(val1 == val2)
        if optype is TokenType.DEREF:
            if self.mem_read is None:
                raise ExprError("memory is not available")
            return self.mem_read(val2 & WORD_MASK) & DWORD_MASK
        raise ExprError(f"unsupported operator '{self.tokens[op].text}'")


def evaluate(text: str,
             reg_lookup: Optional[Callable[[str], int]] = None,
             mem_read: Optional[Callable[[int], int]] = None) -> int:
    """Evaluate ``text`` and return the result as a 32-bit word.

    ``reg_lookup`` maps a register name to its value (unknown names read as 0);
    ``mem_read`` returns the word at a guest address.
    """
    tokens = tokenize(text)
    if len(tokens) > MAX_TOKENS:
        raise ExprError(f"expression has more than {MAX_TOKENS} tokens")
    tokens = [
        Token(TokenType.DEREF, token.text)
        if token.type is TokenType.STAR and (
            i == 0 or (i + 1 < len(tokens) and tokens[i + 1].type is TokenType.HEX))
        else token
        for i, token in enumerate(tokens)
    ]
    return _Evaluator(tokens, reg_lookup, mem_read).eval(0, len(tokens) - 1) & WORD_MASK