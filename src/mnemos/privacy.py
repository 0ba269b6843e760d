import re

# Card numbers are matched before account numbers so 16 digits never read as an account
PII_PATTERNS = [
    (re.compile(r"\b\d{3}[-.]?\d{2}[-.]?\d{4}\b"), "[SSN PROTECTED]"),
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CARD PROTECTED]"),
]
ACCOUNT_NUMBER = re.compile(r"\b\d{8,17}\b")
ACCOUNT_CONTEXT = re.compile(r"\b(?:account|acct|routing|iban|bank|checking|savings)\b", re.IGNORECASE)
ACCOUNT_WINDOW = 40


def _mask_account(match: re.Match) -> str:
    # A bare run of digits is often a phone number; only mask it next to banking words
    window = match.string[max(0, match.start() - ACCOUNT_WINDOW):match.start()]
    return "[ACCOUNT PROTECTED]" if ACCOUNT_CONTEXT.search(window) else match.group()


def redact_pii(content: str) -> str:
    """Mask SSNs, card numbers and bank account numbers before display."""
    if not content:
        return content
    redacted = content
    for pattern, replacement in PII_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return ACCOUNT_NUMBER.sub(_mask_account, redacted)
