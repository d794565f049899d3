"""Tier-4 fallback: substring scan over raw JSONL session logs.

Layout: ``<root>/<org_id>/*.jsonl``.  Only the requesting org's directory is
read; files directly under the root belong to no org and are never served.
Newest files are scanned first.
"""

import json
from pathlib import Path
from typing import List, Union

from core.contracts.records import RetrievedItem


MAX_SNIPPET_CHARS = 500


def _line_text(line: str) -> str:
    """Prefer a message-like field of a JSON object; fall back to the raw line."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return line
    if isinstance(obj, dict):
        for key in ("content", "body", "text", "message"):
            value = obj.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return line


class FileJSONLScanner:
    def __init__(self, root: Union[str, Path], max_files: int = 200):
        self.root = Path(root)
        self.max_files = max_files if max_files > 0 else 200

    def _files(self, org_id: str) -> List[Path]:
        if not org_id or org_id in (".", "..") or "/" in org_id or "\\" in org_id:
            return []
        base = self.root / org_id
        if not base.is_dir():
            return []
        files = [p for p in base.glob("*.jsonl") if p.is_file()]
        files.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)
        return files[: self.max_files]

    def scan(self, org_id: str, query: str, limit: int) -> List[RetrievedItem]:
        needle = str(query or "").strip().lower()
        if not needle or limit <= 0:
            return []
        items: List[RetrievedItem] = []
        for path in self._files(str(org_id or "").strip()):
            with path.open("r", encoding="utf-8", errors="replace") as fh:
                for lineno, raw in enumerate(fh, start=1):
                    line = raw.strip()
                    if not line or needle not in line.lower():
                        continue
                    items.append(RetrievedItem(
                        tier=4,
                        source="jsonl",
                        id=f"{path.name}:{lineno}",
                        snippet=_line_text(line)[:MAX_SNIPPET_CHARS],
                    ))
                    if len(items) >= limit:
                        return items
        return items
