"""
PowerShell script building and validation.

Every value interpolated into a generated script goes through ps_literal()
so hostnames, paths and passwords cannot break out of their quotes.
PowerShellValidator catches unbalanced generated text before it is sent to
a node, where the failure would only surface as a parser error.
"""

import base64
import re
from typing import Any, List, Tuple


def ps_quote(value: str) -> str:
    """Single-quoted PowerShell string literal (no interpolation)."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_literal(value: Any) -> str:
    """
    Render a Python value as a PowerShell literal.

        True -> $true, None -> $null, [1, 'a'] -> @(1, 'a'),
        {'Name': 'x'} -> @{Name = 'x'}
    """
    if value is None:
        return "$null"
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return "@(" + ", ".join(ps_literal(v) for v in value) + ")"
    if isinstance(value, dict):
        items = []
        for key, nested in value.items():
            if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", str(key)):
                key = ps_quote(key)
            items.append(f"{key} = {ps_literal(nested)}")
        return "@{" + "; ".join(items) + "}"
    return ps_quote(value)


def ps_script(*lines: str) -> str:
    """Join non-empty script lines."""
    return "\n".join(line for line in lines if line and line.strip())


def encode_command(script: str) -> str:
    """Base64 UTF-16LE payload for `powershell -EncodedCommand`."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def preview(script: str, max_length: int = 120) -> str:
    """Single-line preview of a script for log lines."""
    flat = " ".join(script.split())
    if len(flat) > max_length:
        return flat[: max_length - 3] + "..."
    return flat


class PowerShellValidator:
    """Lightweight structural checks for generated PowerShell."""

    @staticmethod
    def _scan(script: str) -> Tuple[str, List[str]]:
        """
        Split code from string literals and comments.

        Returns:
            (code with strings/comments removed, errors for unterminated strings)
        """
        code = []
        in_single = in_double = False
        i = 0
        while i < len(script):
            ch = script[i]
            if in_single:
                if ch == "'":
                    if script[i + 1:i + 2] == "'":
                        i += 1
                    else:
                        in_single = False
            elif in_double:
                if ch == "`":
                    i += 1
                elif ch == '"':
                    in_double = False
            elif ch == "`":
                i += 1
            elif ch == "#":
                newline = script.find("\n", i)
                i = len(script) if newline == -1 else newline
                continue
            elif ch == "'":
                in_single = True
            elif ch == '"':
                in_double = True
            else:
                code.append(ch)
            i += 1

        errors = []
        if in_single:
            errors.append("Unterminated single quote string")
        if in_double:
            errors.append("Unterminated double quote string")
        return "".join(code), errors

    @classmethod
    def validate_syntax(cls, script: str) -> List[str]:
        """
        Check quotes, braces, brackets and parentheses balance.

        Returns:
            List of error strings (empty when the script looks well-formed)
        """
        code, errors = cls._scan(script)
        if errors:
            return errors

        pairs = {"}": "{", ")": "(", "]": "["}
        names = {"{": "brace", "(": "parenthesis", "[": "bracket"}
        stack = []
        for ch in code:
            if ch in "{([":
                stack.append(ch)
            elif ch in pairs:
                if not stack or stack[-1] != pairs[ch]:
                    return [f"Unexpected closing {names[pairs[ch]]} '{ch}'"]
                stack.pop()
        return [f"Unclosed {names[opener]} '{opener}'" for opener in stack]
