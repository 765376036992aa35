"""
Deterministic hashing for snapshot change detection.

Local (non-git) stack sources have no commit id, so their revision is the
content hash of the rendered snapshot file.

Examples:
    >>> file_hash(b"duties: []\\n")
    '3f1c...'  # 40-char hex string

Tags:
    hashing, change-detection, g8r
"""

import hashlib


def file_hash(data: bytes, length: int = 40) -> str:
    """Hash raw file content.

    Args:
        data: File bytes
        length: Number of hex characters to return (max 64)
    """
    return hashlib.sha256(data).hexdigest()[:length]
