import hashlib
import re

IMPORT_ID_PREFIX = "BB"
FORCED_IMPORT_ID_PREFIX = "BBF"
IMPORT_ID_MAX_LENGTH = 36
MEMO_MAX_LENGTH = 200

_DIGEST_LENGTH = 8
_REFERENCE_RE = re.compile(r"Ref:\s*(.+)$")


def _build(prefix: str, transaction_id: str) -> str:
    stripped = transaction_id.replace("-", "")
    candidate = f"{prefix}:{stripped}"
    if len(candidate) <= IMPORT_ID_MAX_LENGTH:
        return candidate
    # Plain truncation would let ids sharing a long head collide.
    digest = hashlib.sha1(stripped.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    head_length = IMPORT_ID_MAX_LENGTH - len(prefix) - 1 - _DIGEST_LENGTH
    return f"{prefix}:{stripped[:head_length]}{digest}"


def generate_import_id(transaction_id: str) -> str:
    return _build(IMPORT_ID_PREFIX, transaction_id)


def generate_forced_import_id(transaction_id: str) -> str:
    return _build(FORCED_IMPORT_ID_PREFIX, transaction_id)


def matches_import_id(transaction_id: str, import_id: str | None) -> bool:
    if not import_id:
        return False
    return import_id in (
        generate_import_id(transaction_id),
        generate_forced_import_id(transaction_id),
    )


def truncate_memo(memo: str) -> str:
    if len(memo) > MEMO_MAX_LENGTH:
        return memo[:MEMO_MAX_LENGTH - 3] + "..."
    return memo


def format_import_memo(memo: str, reference: str) -> str:
    """Build the memo sent to YNAB; the reference tag goes last so it survives truncation."""
    if not reference:
        return truncate_memo(memo)
    suffix = f", Ref: {reference}" if memo else f"Ref: {reference}"
    room = MEMO_MAX_LENGTH - len(suffix)
    if room <= 0:
        return truncate_memo(suffix.lstrip(", "))
    if len(memo) > room:
        memo = memo[:max(room - 3, 0)] + "..."
    return memo + suffix


def extract_reference(memo: str | None) -> str | None:
    if not memo or not memo.strip():
        return None
    match = _REFERENCE_RE.search(memo)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None
