"""
String slugification for checkpoint and output file names.

Job identifiers embed hostnames and hashes; output directories embed
hostnames and timestamps. Both must be safe on every filesystem we write to.
"""

import re
from typing import Optional

# Anything that is not alphanumeric or a hyphen is replaced
UNSAFE_CHARS_PATTERN = re.compile(r"[^A-Za-z0-9\-]")

WINDOWS_RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"} | {f"COM{i}" for i in range(1, 10)} | {f"LPT{i}" for i in range(1, 10)}
)


def slugify(text: str, replacement: str = "-", max_length: Optional[int] = 200, lowercase: bool = True) -> str:
    """
    Convert a string to a filesystem-safe slug.

    Examples:
        >>> slugify("discovery-Example.COM-1a2b")
        'discovery-example-com-1a2b'

        >>> slugify("CON")
        'con-reserved'

        >>> slugify("   ")
        ''
    """
    if not text or not text.strip():
        return ""

    result = UNSAFE_CHARS_PATTERN.sub(replacement, text.strip())

    if len(replacement) == 1:
        result = re.sub(f"{re.escape(replacement)}+", replacement, result)

    result = result.strip(replacement)
    if lowercase:
        result = result.lower()

    parts = result.split(replacement)
    if parts and parts[0].upper() in WINDOWS_RESERVED_NAMES:
        parts.append("reserved")
        result = replacement.join(parts)

    if max_length and len(result) > max_length:
        result = result[:max_length].rstrip(replacement)

    return result


def slugify_job_id(job_id: str) -> str:
    """
    Slugify a job identifier for use as a checkpoint file stem.

    Examples:
        >>> slugify_job_id("batch-batch-0f3c9e2a11b4d6e7")
        'batch-batch-0f3c9e2a11b4d6e7'

        >>> slugify_job_id("discovery-docs.example.com-aa")
        'discovery-docs-example-com-aa'
    """
    return slugify(job_id, replacement="-", max_length=100, lowercase=True)
