"""Report persistence helpers."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import get_settings

logger = logging.getLogger(__name__)


def safe_filename(text: str, max_length: int = 30) -> str:
    """Filesystem-safe slug of ``text``."""
    slug = re.sub(r"[^\w\-]", "_", text.strip())[:max_length].strip("_")
    return slug or "report"


def save_report(
    content: str,
    prefix: str = "research",
    metadata: dict[str, Any] | None = None,
    results_dir: Path | None = None,
) -> Path:
    """Save a report to a uniquely named file in the results directory.

    Args:
        content: Report markdown.
        prefix: Filename prefix, usually derived from the query.
        metadata: Optional metadata written alongside as a .json file.
        results_dir: Target directory; defaults to the configured results directory.

    Returns:
        Path to the saved report.
    """
    if results_dir is None:
        results_dir = get_settings().get_results_dir()
    results_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    base = f"{timestamp}_{safe_filename(prefix)}"
    file_path = results_dir / f"{base}.md"
    if file_path.exists():
        for i in range(1, 10_000):
            candidate = results_dir / f"{base}_{i}.md"
            if not candidate.exists():
                file_path = candidate
                break
        else:
            raise RuntimeError("Failed to allocate a unique report filename after 10,000 attempts")

    file_path.write_text(content, encoding="utf-8")

    if metadata:
        meta = {"timestamp": datetime.now().isoformat(), "file": file_path.name, **metadata}
        file_path.with_suffix(".json").write_text(json.dumps(meta, indent=2), encoding="utf-8")

    logger.info(f"Saved report to {file_path}")
    return file_path


def write_report_file(path: str | Path, content: str) -> Path:
    """Write a report to an explicit path, creating parent directories."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    logger.info(f"Report saved to {target}")
    return target
