"""File probe: presence, permission bits and content hash of a managed file.

Content is captured (up to a size cap) so a failed remediation can restore
the previous file; it never leaves the process in audit evidence.
"""
from __future__ import annotations

import hashlib
from typing import Any

from .base import ProbeError, Transport, stderr_excerpt

# Files larger than this are hashed remotely and not captured for rollback
_CONTENT_LIMIT = 256 * 1024


class FileProbe:
    kind = "file"
    name = "file_probe"

    def observe(self, transport: Transport, target: str) -> dict[str, Any]:
        stat_result = transport.run(["stat", "-c", "%a %s %F", "--", target])
        if not stat_result.ok:
            if "No such file" in stat_result.stderr:
                return {"present": False, "mode": None, "sha256": None, "content": None}
            raise ProbeError(f"stat {target}: {stderr_excerpt(stat_result)}")

        mode, size, file_type = _parse_stat(stat_result.stdout, target)
        if file_type != "regular file" and file_type != "regular empty file":
            raise ProbeError(f"{target} is a {file_type}, not a regular file")

        if size > _CONTENT_LIMIT:
            return {"present": True, "mode": mode, "sha256": _remote_sha256(transport, target), "content": None}

        cat_result = transport.run(["cat", "--", target])
        if not cat_result.ok:
            raise ProbeError(f"cat {target}: {stderr_excerpt(cat_result)}")
        raw = cat_result.raw
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            # binary content is compared by hash only and cannot be restored
            content = None
        return {
            "present": True,
            "mode": mode,
            "sha256": hashlib.sha256(raw).hexdigest(),
            "content": content,
        }


def _parse_stat(output: str, target: str) -> tuple[str, int, str]:
    parts = output.strip().split(" ", 2)
    if len(parts) != 3:
        raise ProbeError(f"unexpected stat output for {target}: {output.strip()[:200]!r}")
    mode, size, file_type = parts
    try:
        return f"{int(mode, 8):04o}", int(size), file_type
    except ValueError:
        raise ProbeError(f"unexpected stat output for {target}: {output.strip()[:200]!r}") from None


def _remote_sha256(transport: Transport, target: str) -> str:
    result = transport.run(["sha256sum", "--", target], timeout=30)
    if not result.ok or not result.stdout.strip():
        raise ProbeError(f"sha256sum {target}: {stderr_excerpt(result)}")
    return result.stdout.split()[0].lower()
