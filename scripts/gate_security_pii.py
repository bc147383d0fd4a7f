#!/usr/bin/env python3
"""Gate: no PII in runtime logs.

Fails if, anywhere under src/:
- print( is used in runtime code
- a logger call mentions a sensitive value (phone numbers, addresses, message
  text, raw payloads) on a line that does not go through redaction

Usage:
    python scripts/gate_security_pii.py
"""

import re
import sys
from pathlib import Path

# Names that carry customer data in this codebase
SENSITIVE_KEYWORDS = (
    "chat_address",
    "to_address",
    "email.sender",
    "email.text",
    "event.text",
    "identity",
    "payload",
    "phone",
    "request.body",
    "body",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"logger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
    "hash_identifier",
)


def _logger_call_spans(lines: list[str]) -> list[tuple[int, str]]:
    """Each logger call with its continuation lines, joined into one string."""
    spans = []
    for index, line in enumerate(lines):
        if not LOGGER_CALL_PATTERN.search(line):
            continue
        depth = 0
        collected = []
        for follow in lines[index:]:
            collected.append(follow)
            depth += follow.count("(") - follow.count(")")
            if depth <= 0:
                break
        spans.append((index + 1, "\n".join(collected)))
    return spans


def check_file(filepath: Path) -> list[str]:
    """Check a single file. Returns one message per violation."""
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    errors = []
    lines = content.splitlines()
    for lineno, line in enumerate(lines, start=1):
        code_part = line.split("#", 1)[0]
        if PRINT_PATTERN.search(code_part):
            errors.append(f"{filepath}:{lineno}: print() not allowed in runtime code")

    for lineno, call in _logger_call_spans(lines):
        # Message strings may mention these words; only code is checked
        code = re.sub(r'"[^"\n]*"', '""', call)
        if any(rp in code for rp in REDACTION_PATTERNS):
            continue
        lowered = code.lower()
        for keyword in SENSITIVE_KEYWORDS:
            if keyword in lowered:
                errors.append(
                    f"{filepath}:{lineno}: logger call with '{keyword}' "
                    "must use redaction (safe_log_context/hash_identifier)"
                )
                break

    return errors


def main() -> int:
    src_dir = Path("src")
    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"
    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("PII gate FAILED - violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("PII gate PASSED - no violations found\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
